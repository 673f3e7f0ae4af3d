"""Wire formats, event decoding and de-duplication, event streaming and npm release watching."""

__version__ = "0.1.0"