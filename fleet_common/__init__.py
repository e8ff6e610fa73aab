"""
Fleet Common module.

This module contains shared domain models and interfaces used across
the fleet components (client, controller, persistence, admin).

The common module has no dependencies on other fleet_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .cache import KeyValueCache
from .errors import (
    FleetError,
    IdentityConflictError,
    InstanceNotFoundError,
    RegistrationError,
)
from .models import Build, Executor, Instance, InstanceConfig, Job
from .repository import FleetRepository

__all__ = [
    "Build",
    "Executor",
    "FleetError",
    "FleetRepository",
    "IdentityConflictError",
    "Instance",
    "InstanceConfig",
    "InstanceNotFoundError",
    "Job",
    "KeyValueCache",
    "RegistrationError",
]
