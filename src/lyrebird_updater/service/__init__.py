"""
Background service handling for the LyreBirdAudio version manager.

- systemd: service-manager backend and status helpers
- unit_file: Environment customisation extraction and splicing
- coordinator: stop/reinstall/restart lifecycle around a switch
"""

from lyrebird_updater.service.systemd import (
    ServiceManagerBackend,
    SystemdServiceManager,
    get_service_status,
)
from lyrebird_updater.service.unit_file import (
    GENERATOR_ENVIRONMENT_DEFAULTS,
    extract_custom_environment,
    splice_custom_environment,
)

__all__ = [
    "ServiceManagerBackend",
    "SystemdServiceManager",
    "get_service_status",
    "GENERATOR_ENVIRONMENT_DEFAULTS",
    "extract_custom_environment",
    "splice_custom_environment",
]
