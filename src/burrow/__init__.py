"""Burrow: caching DNS proxy forwarding over DNS-over-HTTPS through a SOCKS tunnel."""
