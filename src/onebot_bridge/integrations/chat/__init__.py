"""Platform-agnostic chat helpers (chunking, command parsing, turn policy, media)."""
