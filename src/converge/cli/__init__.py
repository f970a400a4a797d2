"""Command-line entrypoints: ``converge-playbook`` and ``converge-vault``."""
