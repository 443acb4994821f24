"""OneBot v11 bridge: transport, inbound event pipeline and outbound dispatch."""

__version__ = "0.1.0"
