"""Resource codec, validation and capability reporting."""
