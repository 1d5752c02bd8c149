"""Session operations: store components, parse, upload, cancel.

``parse`` and ``upload`` each run one single-threaded pass. A pass is started
by a compare-and-set on the session status, so of two racing triggers exactly
one runs and the other gets :class:`SessionBusy`. Errors raised inside a pass
are recorded on the session (``error_message``/``error_kind``) rather than
propagated; only precondition failures are raised to the caller.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from contextlib import ExitStack
from typing import Any

from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from .assembler import BundleReader
from .config import Settings, get_settings
from .errors import (
    Cancelled,
    ComponentTooLarge,
    IngestError,
    InvalidDestination,
    InvalidTransition,
    MissingComponent,
    RecordCountMismatch,
    SessionBusy,
)
from .models import (
    ACTIVE_STATUSES,
    REQUIRED_COMPONENTS,
    ComponentKind,
    DestinationConfig,
    Feature,
    GeometryKind,
    IngestionSession,
    SchemaField,
    SessionStatus,
    ShapefileComponent,
)
from .projection import crs_fields, describe
from .schema import apply_manual_schema, infer_schema
from .session import SessionStore
from .sinks import SinkFactory
from .storage import ComponentStore
from .uploader import BatchUploader, RetryPolicy

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "InternalError"


def preview_row(feature: Feature) -> dict[str, Any]:
    geometry = feature.geometry
    return {
        "ordinal": feature.ordinal,
        "geometry": {
            "type": geometry.kind.value,
            "bbox": geometry.bbox,
            "num_points": len(geometry.points),
        },
        "attributes": to_jsonable_python(feature.attributes),
    }


class IngestionPipeline:
    def __init__(
        self,
        store: SessionStore,
        components: ComponentStore,
        sink_factory: SinkFactory,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.components = components
        self.sink_factory = sink_factory
        self.settings = settings or get_settings()
        self.sleep = sleep

    # -- session bookkeeping -------------------------------------------------

    def create_session(self) -> IngestionSession:
        session = self.store.create(IngestionSession(id=uuid.uuid4().hex))
        logger.info("created session %s", session.id)
        return session

    def get_session(self, session_id: str) -> IngestionSession:
        return self.store.get(session_id)

    def recent_sessions(self, limit: int | None = None) -> list[IngestionSession]:
        return self.store.list_recent(limit or self.settings.recent_limit)

    def delete_session(self, session_id: str) -> None:
        session = self.store.get(session_id)
        if session.status in ACTIVE_STATUSES:
            raise SessionBusy(f"session {session_id} is {session.status.value}")
        self.store.delete(session_id)
        self.components.delete_bundle(session_id)
        logger.info("deleted session %s", session_id)

    def add_component(
        self, session_id: str, kind: ComponentKind, filename: str, data: bytes
    ) -> ShapefileComponent:
        """Store one bundle file, replacing any earlier file of the same kind."""
        session = self.store.get(session_id)
        if session.status is not SessionStatus.PENDING:
            raise InvalidTransition(f"session {session_id} is {session.status.value}, components are fixed")
        if len(data) > self.settings.max_component_bytes:
            raise ComponentTooLarge(
                f"{filename} is {len(data)} bytes, limit is {self.settings.max_component_bytes}"
            )
        component = self.components.put(session_id, kind, filename, data)
        others = [c for c in session.components if c.kind is not kind]
        self.store.update(session_id, components=[*others, component])
        return component

    def set_destination(self, session_id: str, **config: Any) -> IngestionSession:
        session = self.store.get(session_id)
        if session.status not in (SessionStatus.PENDING, SessionStatus.PARSED):
            raise InvalidTransition(f"session {session_id} is {session.status.value}")
        try:
            destination = DestinationConfig(**config)
        except ValidationError as e:
            raise InvalidDestination(str(e)) from e
        return self.store.update(session_id, destination=destination)

    def set_manual_schema(self, session_id: str, fields: list[SchemaField]) -> IngestionSession:
        """Replace the proposed schema with a user-supplied one."""
        session = self.store.get(session_id)
        if session.status is not SessionStatus.PARSED:
            raise InvalidTransition(f"session {session_id} is {session.status.value}, schema is not editable")
        schema = apply_manual_schema(
            fields,
            session.attribute_fields,
            session.geometry_type,
            has_null_geometry=session.has_null_geometry,
        )
        return self.store.update(session_id, resolved_schema=schema)

    def cancel(self, session_id: str) -> IngestionSession:
        """Ask the running pass to stop at its next record or batch boundary."""
        if not self.store.request_cancel(session_id):
            session = self.store.get(session_id)
            raise InvalidTransition(f"session {session_id} is {session.status.value}, nothing to cancel")
        logger.info("cancellation requested for session %s", session_id)
        return self.store.get(session_id)

    # -- state transitions ---------------------------------------------------

    def _begin(self, session_id: str, expected: SessionStatus, new: SessionStatus, **changes: Any) -> None:
        if self.store.compare_and_set_status(session_id, expected, new, **changes):
            return
        current = self.store.get(session_id).status
        if current in ACTIVE_STATUSES or current is SessionStatus.PARSED:
            raise SessionBusy(f"session {session_id} is already {current.value}")
        raise InvalidTransition(f"session {session_id} is {current.value}, expected {expected.value}")

    def _fail(self, session_id: str, phase: SessionStatus, error: Exception, **changes: Any) -> None:
        kind = error.kind if isinstance(error, IngestError) else INTERNAL_ERROR
        logger.error("session %s failed while %s: [%s] %s", session_id, phase.value, kind, error)
        self.store.compare_and_set_status(
            session_id,
            phase,
            SessionStatus.FAILED,
            error_message=str(error),
            error_kind=kind,
            **changes,
        )

    def _check_cancel(self, session_id: str) -> bool:
        return self.store.cancel_requested(session_id)

    def _open_bundle(self, session: IngestionSession, stack: ExitStack) -> BundleReader:
        shp = session.component(ComponentKind.SHP)
        shx = session.component(ComponentKind.SHX)
        dbf = session.component(ComponentKind.DBF)
        if shp is None or shx is None or dbf is None:
            missing = ", ".join(k.value for k in session.missing_components())
            raise MissingComponent(f"session {session.id} is missing {missing}")
        return BundleReader(
            stack.enter_context(self.components.open(shp)),
            stack.enter_context(self.components.open(dbf)),
            stack.enter_context(self.components.open(shx)),
            shp_size=shp.size,
            shx_size=shx.size,
            encoding=self.settings.dbf_encoding,
        )

    # -- parse ---------------------------------------------------------------

    def begin_parse(self, session_id: str) -> IngestionSession:
        session = self.store.get(session_id)
        if session.status is SessionStatus.PENDING:
            missing = session.missing_components() + [
                c.kind for c in session.components if c.kind in REQUIRED_COMPONENTS and not self.components.exists(c)
            ]
            if missing:
                raise MissingComponent(f"session {session_id} is missing {', '.join(k.value for k in missing)}")
        self._begin(session_id, SessionStatus.PENDING, SessionStatus.PARSING)
        return self.store.get(session_id)

    def run_parse(
        self,
        session_id: str,
        *,
        required: Iterable[str] = (),
        integer_columns: str | Iterable[str] | None = None,
    ) -> IngestionSession:
        session = self.store.get(session_id)
        logger.info("parse start session=%s", session_id)
        try:
            result = self._parse_pass(session, required, integer_columns)
        except Exception as e:
            if not isinstance(e, IngestError):
                logger.exception("unexpected error parsing session %s", session_id)
            self._fail(session_id, SessionStatus.PARSING, e)
        else:
            self.store.compare_and_set_status(session_id, SessionStatus.PARSING, SessionStatus.PARSED, **result)
            logger.info(
                "parse ok session=%s features=%d geometry=%s crs=%s",
                session_id,
                result["total_features"],
                result["geometry_type"].value,
                describe(self.store.get(session_id)),
            )
        return self.store.get(session_id)

    def parse(
        self,
        session_id: str,
        *,
        required: Iterable[str] = (),
        integer_columns: str | Iterable[str] | None = None,
    ) -> IngestionSession:
        """Decode the bundle once, counting features and proposing a schema.

        ``required`` and ``integer_columns`` name attribute columns to mark
        REQUIRED or force to INTEGER in the proposed schema.
        """
        self.begin_parse(session_id)
        return self.run_parse(session_id, required=required, integer_columns=integer_columns)

    def _parse_pass(
        self,
        session: IngestionSession,
        required: Iterable[str],
        integer_columns: str | Iterable[str] | None,
    ) -> dict[str, Any]:
        count = 0
        has_null = False
        preview: list[dict[str, Any]] = []

        with ExitStack() as stack:
            reader = self._open_bundle(session, stack)
            for feature in reader.features():
                if self._check_cancel(session.id):
                    raise Cancelled(f"parse cancelled after {count} features")
                count += 1
                has_null = has_null or feature.kind is GeometryKind.NULL
                if len(preview) < self.settings.preview_size:
                    preview.append(preview_row(feature))
            fields = reader.fields
            geometry_type = reader.geometry_type

            prj = session.component(ComponentKind.PRJ)
            wkt = None
            if prj is not None:
                wkt = stack.enter_context(self.components.open(prj)).read()

        return {
            "total_features": count,
            "processed_features": 0,
            "geometry_type": geometry_type,
            "has_null_geometry": has_null,
            "attribute_fields": fields,
            "resolved_schema": infer_schema(
                fields,
                geometry_type,
                has_null_geometry=has_null,
                required=required,
                integer_columns=integer_columns,
            ),
            "preview": preview,
            **crs_fields(wkt),
        }

    # -- upload --------------------------------------------------------------

    def begin_upload(self, session_id: str) -> IngestionSession:
        session = self.store.get(session_id)
        if session.status is SessionStatus.PARSED:
            if session.resolved_schema is None:
                raise InvalidTransition(f"session {session_id} has no schema")
            if session.destination is None:
                raise InvalidTransition(f"session {session_id} has no destination configured")
        self._begin(
            session_id,
            SessionStatus.PARSED,
            SessionStatus.UPLOADING,
            processed_features=0,
            failed_offset=None,
        )
        return self.store.get(session_id)

    def run_upload(self, session_id: str) -> IngestionSession:
        session = self.store.get(session_id)
        fields = session.resolved_schema.fields
        uploader: BatchUploader | None = None
        logger.info(
            "upload start session=%s table=%s features=%d",
            session_id,
            session.destination.table_id,
            session.total_features,
        )
        try:
            with ExitStack() as stack:
                sink = self.sink_factory(session.destination)
                stack.callback(sink.close)
                sink.ensure_table(fields)
                reader = self._open_bundle(session, stack)
                uploader = BatchUploader(
                    sink,
                    fields,
                    batch_size=self.settings.batch_size,
                    retry=RetryPolicy(
                        max_attempts=self.settings.max_attempts,
                        base_delay=self.settings.retry_base_delay,
                        max_delay=self.settings.retry_max_delay,
                    ),
                    on_commit=lambda n: self.store.increment_processed(session_id, n),
                    should_stop=lambda: self._check_cancel(session_id),
                    sleep=self.sleep,
                )
                uploader.run(reader.features())
        except Exception as e:
            if not isinstance(e, IngestError):
                logger.exception("unexpected error uploading session %s", session_id)
            offset = uploader.failed_offset if uploader is not None else None
            self._fail(session_id, SessionStatus.UPLOADING, e, failed_offset=offset)
            return self.store.get(session_id)

        current = self.store.get(session_id)
        if current.processed_features != current.total_features:
            self._fail(
                session_id,
                SessionStatus.UPLOADING,
                RecordCountMismatch(
                    f"uploaded {current.processed_features} features, parse counted {current.total_features}"
                ),
            )
        else:
            self.store.compare_and_set_status(session_id, SessionStatus.UPLOADING, SessionStatus.COMPLETED)
            logger.info("upload ok session=%s rows=%d", session_id, current.processed_features)
        return self.store.get(session_id)

    def upload(self, session_id: str) -> IngestionSession:
        """Re-decode the bundle and load every feature into the destination."""
        self.begin_upload(session_id)
        return self.run_upload(session_id)
