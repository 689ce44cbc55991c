"""Protocol definitions compiled at import by grpcio-tools."""
