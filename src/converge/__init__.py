# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge: a small desired-state playbook engine.

Runs Ansible-style YAML playbooks against an inventory of hosts and converges
each host toward the declared state exactly once per run.

Features:
    - Layered variable scopes with Ansible Vault encrypted secrets
    - Jinja2 templating with lazy ``when`` evaluation
    - Tag and host-limit filtering applied once, before execution
    - Fork-bounded concurrent host workers with handler notification
    - Check mode (dry run) that never takes the mutating path

This package exposes release metadata; the engine lives in ``converge.engine``.
"""

from __future__ import annotations

from converge.release import __version__, __author__, __codename__

__all__ = [
    "__version__",
    "__author__",
    "__codename__",
]
