"""Authenticated TFTP: stop-and-wait file transfer over UDP with a login handshake."""
