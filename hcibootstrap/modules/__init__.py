"""
Bootstrap run components.
"""
from .status import StatusStore
from .health import HealthPoller
from .addons import AddonInstaller
from .orchestrator import Orchestrator

__all__ = [
    'StatusStore',
    'HealthPoller',
    'AddonInstaller',
    'Orchestrator',
]
