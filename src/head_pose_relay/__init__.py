"""Head pose relay: landmark-based head tracking streamed to a synthesizer."""

__version__ = "0.1.0"
