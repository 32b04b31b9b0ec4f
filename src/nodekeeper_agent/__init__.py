"""nodekeeper-agent: per-host configuration convergence and rolling upgrades."""

__version__ = "0.1.0"
