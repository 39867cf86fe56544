"""patchloop: an autonomous loop that repairs failing test suites with language-model patches."""

__version__ = "0.1.0"
