"""
SmartCharge Charging Package

Decides when a plugged-in vehicle should charge and sends the command.

Modules:
    models: User, vehicle and settings document types
    telemetry: Partial telemetry merge and plug-in detection
    controller: Priority-ordered START/STOP decision policy
    actions: Tesla Fleet API client and command dispatcher
    override: Consume-once manual override gate
    engine: Per-user decision pipeline
    config: config.yaml / secrets.yaml loading
"""

from .config import AppConfig, load_config

__all__ = ["AppConfig", "load_config"]
