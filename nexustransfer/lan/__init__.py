"""LAN networking core: discovery, frame transport and chunked file transfer."""
