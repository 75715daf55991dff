"""Container, layer and system management."""

from horizon.runtime.containers import ContainerManager
from horizon.runtime.layers import LayerManager, order_layers
from horizon.runtime.system import SystemManager, validate_configuration

__all__ = [
    "ContainerManager",
    "LayerManager",
    "order_layers",
    "SystemManager",
    "validate_configuration",
]
