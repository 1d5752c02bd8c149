"""Component store: where uploaded bundle files live between passes."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import BinaryIO, Protocol

from .errors import MissingComponent
from .models import ComponentKind, ShapefileComponent

logger = logging.getLogger(__name__)


def component_kind(filename: str) -> ComponentKind | None:
    """Bundle component kind from a file name, or None for unrelated files."""
    suffix = Path(filename).suffix.lower().lstrip(".")
    try:
        return ComponentKind(suffix)
    except ValueError:
        return None


class ComponentStore(Protocol):
    def put(self, bundle_id: str, kind: ComponentKind, original_name: str, data: bytes) -> ShapefileComponent: ...

    def open(self, component: ShapefileComponent) -> BinaryIO: ...

    def exists(self, component: ShapefileComponent) -> bool: ...

    def delete_bundle(self, bundle_id: str) -> None: ...


class LocalComponentStore:
    """Stores each bundle as a directory with one file per component kind."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def put(self, bundle_id: str, kind: ComponentKind, original_name: str, data: bytes) -> ShapefileComponent:
        bundle_dir = self.root / bundle_id
        bundle_dir.mkdir(parents=True, exist_ok=True)
        path = bundle_dir / f"bundle.{kind.value}"
        path.write_bytes(data)
        logger.info("stored %s component for %s (%d bytes)", kind.value, bundle_id, len(data))
        return ShapefileComponent(
            kind=kind,
            size=len(data),
            location=str(path),
            bundle_id=bundle_id,
            original_name=original_name,
        )

    def open(self, component: ShapefileComponent) -> BinaryIO:
        try:
            return open(component.location, "rb")
        except FileNotFoundError as e:
            raise MissingComponent(
                f"{component.kind.value} component of {component.bundle_id} is not in the store"
            ) from e

    def exists(self, component: ShapefileComponent) -> bool:
        return Path(component.location).is_file()

    def delete_bundle(self, bundle_id: str) -> None:
        shutil.rmtree(self.root / bundle_id, ignore_errors=True)
