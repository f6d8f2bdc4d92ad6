"""Turn notes, images and recorded speech into Mermaid diagrams."""

__version__ = "0.1.0"
