"""Device tree building blocks: live trees, source positions, and source and YAML output."""

__version__ = "0.1.0"
__all__ = ["util", "srcpos", "livetree", "treesource", "yamltree"]