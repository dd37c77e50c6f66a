"""autoalt — batch alt text generation with vision language models."""

__version__ = "0.1.0"
