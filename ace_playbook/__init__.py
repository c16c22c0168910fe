"""ACE Playbook: a self-curating bullet knowledge store."""

__version__ = "0.2.0"
