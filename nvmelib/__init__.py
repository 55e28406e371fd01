"""NVMe-MI messaging, endpoints, Admin commands and topology objects."""

__version__ = "1.1.0"
__all__ = ["admin", "endpoint", "messages", "tree_nodes"]