"""Payment times reporting pipeline: mapping, staging, rules, classification and validation."""

__version__ = "0.1.0"
