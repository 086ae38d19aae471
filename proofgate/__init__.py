"""proofgate: route proof tracing and release policy gating."""

__version__ = "0.1.0"
