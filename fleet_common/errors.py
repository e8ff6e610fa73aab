"""
Error types shared by the fleet components.

Remote-call failures live in fleet_client.errors; these cover the mirror
and the administrative flows.
"""


class FleetError(Exception):
    """Base class for fleet errors surfaced to callers."""


class InstanceNotFoundError(FleetError):
    def __init__(self, instance_id: str):
        super().__init__(f"CI instance not found: {instance_id}")
        self.instance_id = instance_id


class IdentityConflictError(FleetError):
    """A write collided with a unique key (duplicate name, second primary)."""


class RegistrationError(FleetError):
    """An instance failed validation or its connectivity probe."""
