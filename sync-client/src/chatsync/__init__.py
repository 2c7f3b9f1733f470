"""Local-first chat session client with Hub synchronization."""
