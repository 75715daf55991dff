"""
Horizon - declarative system reconciliation.

Compares the running system against a desired configuration snapshot and
converges it live where possible, with snapshots and rollback around every
update, plus containerized system layers.
"""

__version__ = "1.0.0"
__author__ = "Horizon Development Team"

# Re-export key components for easier access
from horizon.models.change import Change
from horizon.models.config import HorizonConfig
from horizon.models.container import ContainerSpec
from horizon.models.layer import LayerSpec
from horizon.models.snapshot import ConfigSnapshot

__all__ = [
    "Change",
    "ConfigSnapshot",
    "ContainerSpec",
    "HorizonConfig",
    "LayerSpec",
]
