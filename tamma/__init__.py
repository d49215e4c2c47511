"""tamma: autonomous development-loop workflow engine."""

__version__ = "0.4.0"
