"""Core auction model, bid intake and settlement pipeline."""
