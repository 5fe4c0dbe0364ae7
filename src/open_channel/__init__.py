"""open-channel: one generate() contract over several LLM vendor APIs."""

__version__ = "0.1.0"
