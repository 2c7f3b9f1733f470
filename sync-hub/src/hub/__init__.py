"""Chat sync Hub server."""
