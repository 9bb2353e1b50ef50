"""loomtree - grow a tree of text by streaming language-model completions."""

__version__ = "0.1.0"
