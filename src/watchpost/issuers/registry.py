"""Issuer registry - the set of detectors wired into a pipeline."""

import importlib
import logging

from watchpost.issuers.base import Issuer
from watchpost.models.enums import IssuerKind

logger = logging.getLogger(__name__)

# Bundled issuers, name -> lazy-import class path
AVAILABLE_ISSUERS: dict[str, str] = {
    "redirect": "watchpost.issuers.redirect.RedirectIssuer",
}


def import_issuer(dotted_path: str) -> type[Issuer]:
    """Import an issuer class from its dotted module path."""
    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    return getattr(module, class_name)


class IssuerRegistry:
    def __init__(self, issuers: list[Issuer] | None = None) -> None:
        self._issuers: dict[str, Issuer] = {}
        for issuer in issuers or []:
            self.register(issuer)

    def register(self, issuer: Issuer) -> None:
        if issuer.name in self._issuers:
            raise ValueError(f"Issuer '{issuer.name}' is already registered")
        self._issuers[issuer.name] = issuer

    def unregister(self, name: str) -> None:
        self._issuers.pop(name, None)

    def get(self, name: str) -> Issuer | None:
        return self._issuers.get(name)

    def has(self, name: str) -> bool:
        return name in self._issuers

    def all(self, enabled_only: bool = False) -> list[Issuer]:
        """Issuers ordered by priority, then name."""
        issuers = sorted(self._issuers.values(), key=lambda i: (i.priority, i.name))
        if enabled_only:
            issuers = [i for i in issuers if i.is_enabled()]
        return issuers

    def by_kind(self, *kinds: IssuerKind) -> list[Issuer]:
        return [i for i in self.all(enabled_only=True) if i.kind in kinds]

    def __len__(self) -> int:
        return len(self._issuers)

    def __contains__(self, name: str) -> bool:
        return self.has(name)


def build_issuers(settings) -> IssuerRegistry:
    """Instantiate every issuer named in ``settings.issuers`` with its options."""
    registry = IssuerRegistry()
    for name, options in settings.issuers.items():
        dotted_path = AVAILABLE_ISSUERS.get(name)
        if dotted_path is None:
            logger.warning("Unknown issuer %r in configuration, skipping", name)
            continue
        registry.register(import_issuer(dotted_path)(options))
    return registry
