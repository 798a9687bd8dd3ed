"""Configuration, observability and security helpers shared by the proxy and CLI."""
