from dataclasses import dataclass, field
from typing import Dict, Iterable


@dataclass
class RegistryItem:
    type: str
    label: str


@dataclass
class Registry:
    name: str
    items: Dict[str, RegistryItem] = field(default_factory=dict)

    def register(self, type_name: str, label: str) -> None:
        type_name = str(getattr(type_name, "value", type_name))
        self.items[type_name] = RegistryItem(type=type_name, label=label)

    def get(self, type_name: str) -> RegistryItem | None:
        return self.items.get(str(getattr(type_name, "value", type_name)))

    def label(self, type_name: str) -> str:
        item = self.get(type_name)
        return item.label if item else str(type_name)

    def __contains__(self, type_name: str) -> bool:
        return self.get(type_name) is not None

    def all(self) -> Iterable[RegistryItem]:
        return self.items.values()
