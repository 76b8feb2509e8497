from .defaults import create_default_registries
from .registry import Registry, RegistryItem

__all__ = ["Registry", "RegistryItem", "create_default_registries", "describe_registries"]


def describe_registries(registries: dict[str, Registry]) -> dict[str, list[dict[str, str]]]:
    """Flatten registries into {name: [{"type", "label"}, ...]} for pickers and docs."""
    return {
        name: [{"type": item.type, "label": item.label} for item in registry.all()]
        for name, registry in registries.items()
    }
