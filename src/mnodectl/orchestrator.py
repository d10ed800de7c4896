"""High-level node lifecycle operations.

:class:`NodeOrchestrator` ties together the registry, the port allocator and
the lifecycle backends. The ordering rules it enforces are what keep the
registry truthful:

* install persists the record only after the backend has materialised and
  started the node; a backend failure rolls back the install directory;
* edit rewrites backend configuration, then persists, then restarts;
* uninstall tears the backend down first and deletes the record last, so a
  failed teardown leaves the node registered and retryable.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig
from .errors import (
    SERVICE_PORT_LABEL,
    XRAY_PORT_LABEL,
    BackendFault,
    NodeExistsError,
    StorageFault,
    ValidationError,
)
from .logging import OperationScope
from .ports import PortAllocator
from .prompts import InputProvider
from .providers.base import NodeBackend, remove_path
from .state import (
    NodeMethod,
    NodeRecord,
    RegistryStore,
    UpdatableField,
    parse_inbounds,
    validate_name,
)
from .tls import (
    CERT_FILENAME,
    CertificateReport,
    inspect_certificate,
    read_certificate_file,
    validate_certificate_text,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NodeStatus:
    """A registry record joined with live runtime facts."""

    record: NodeRecord
    running: bool
    identifier: str | None = None

    @property
    def name(self) -> str:
        """Return the node name."""
        return self.record.name

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload = self.record.to_dict()
        payload["running"] = self.running
        payload["state"] = "up" if self.running else "down"
        payload["identifier"] = self.identifier
        return payload


@dataclass(slots=True)
class OperationOutcome:
    """Result of a mutating orchestrator call."""

    record: NodeRecord | None
    cancelled: bool = False
    changed: bool = False
    warnings: list[str] = field(default_factory=list)
    certificate: CertificateReport | None = None


class NodeOrchestrator:
    """Install, edit, uninstall and drive registered nodes."""

    def __init__(
        self,
        config: AppConfig,
        store: RegistryStore,
        allocator: PortAllocator,
        backends: Mapping[NodeMethod, NodeBackend],
        prompter: InputProvider,
    ) -> None:
        """Wire the orchestrator to its collaborators."""
        self.config = config
        self.store = store
        self.allocator = allocator
        self.backends = dict(backends)
        self.prompter = prompter

    def backend_for(self, method: NodeMethod) -> NodeBackend:
        """Return the backend managing nodes installed with *method*."""
        try:
            return self.backends[method]
        except KeyError:
            raise BackendFault(f"No backend configured for method '{method.value}'.") from None

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------
    def install(
        self,
        name: str,
        method: NodeMethod | str = NodeMethod.CONTAINER,
        *,
        service_port: int | None = None,
        xray_api_port: int | None = None,
        cert_path: str | None = None,
        cert_content: str | None = None,
        inbounds: str | None = None,
        assume_yes: bool = False,
        op: OperationScope | None = None,
    ) -> OperationOutcome:
        """Provision a new node and register it once it runs."""
        validate_name(name)
        node_method = NodeMethod.parse(method)
        if self.store.exists(name):
            raise NodeExistsError(name)
        backend = self.backend_for(node_method)

        service, xray = self.allocator.complete_pair(service_port, xray_api_port)
        self.allocator.validate_pair(service, xray)
        _step(op, "ports.allocate", detail=f"{service}/{xray}")

        certificate = self._load_certificate(cert_path, cert_content)
        report = inspect_certificate(certificate)
        warnings = report.warnings()

        data_dir = self.config.data_dir_for(name)
        record = NodeRecord(
            name=name,
            service_port=service,
            xray_api_port=xray,
            method=node_method,
            install_dir=self.config.install_dir_for(name),
            data_dir=data_dir,
            cert_file=data_dir / CERT_FILENAME,
            inbounds=parse_inbounds(inbounds),
        )
        self._check_node_dirs(record)

        if not assume_yes and not self.prompter.confirm(
            "Proceed with installation?", default=True
        ):
            _step(op, "confirm", status="skipped", detail="cancelled by operator")
            return OperationOutcome(record=None, cancelled=True, certificate=report)

        try:
            backend.materialize(record, certificate)
            _step(op, "backend.materialize", detail=str(record.install_dir))
            backend.start(record)
            _step(op, "backend.start", detail=node_method.value)
        except BackendFault:
            _step(op, "backend.install", status="error")
            self._rollback(backend, record, op)
            raise

        try:
            created = self.store.create(record)
        except StorageFault:
            logger.error("Registry write failed for %s; tearing down runtime", name)
            self._rollback(backend, record, op)
            raise
        _step(op, "registry.create", detail=name)
        logger.info(
            "Installed node %s (%s) on ports %d/%d",
            name,
            node_method.value,
            service,
            xray,
        )
        return OperationOutcome(
            record=created, changed=True, warnings=warnings, certificate=report
        )

    def _check_node_dirs(self, record: NodeRecord) -> None:
        # Node directories get wiped on uninstall; they must never cover our own.
        managed = [path.resolve() for path in self.config.managed_dirs()]
        for node_dir in (record.install_dir, record.data_dir):
            resolved = node_dir.resolve()
            for path in managed:
                if path == resolved or path.is_relative_to(resolved):
                    raise ValidationError(
                        f"Node name '{record.name}' maps {node_dir} onto mnodectl's "
                        f"own directory {path}. Choose another name."
                    )

    def _load_certificate(self, cert_path: str | None, cert_content: str | None) -> str:
        if cert_content:
            return validate_certificate_text(cert_content)
        if cert_path:
            return read_certificate_file(Path(cert_path))
        return validate_certificate_text(self.prompter.read_certificate())

    def _rollback(
        self,
        backend: NodeBackend,
        record: NodeRecord,
        op: OperationScope | None,
    ) -> None:
        try:
            backend.teardown(record, remove_data=False)
        except BackendFault as exc:
            logger.warning("Rollback for %s incomplete: %s", record.name, exc)
            _step(op, "rollback", status="warning", detail=str(exc))
            try:
                remove_path(record.install_dir)
            except BackendFault as inner:
                logger.warning("Could not remove %s: %s", record.install_dir, inner)
            return
        _step(op, "rollback", status="success", detail=str(record.install_dir))

    # ------------------------------------------------------------------
    # Edit
    # ------------------------------------------------------------------
    def edit(
        self,
        name: str,
        *,
        service_port: int | None = None,
        xray_api_port: int | None = None,
        inbounds: str | None = None,
        assume_yes: bool = False,
        op: OperationScope | None = None,
    ) -> OperationOutcome:
        """Change the ports and inbound filter of an existing node."""
        record = self.store.require(name)
        ask = self.prompter.interactive and not assume_yes

        if service_port is None:
            service_port = (
                self._prompt_port(
                    f"Enter new {SERVICE_PORT_LABEL}", record.service_port, name
                )
                if ask
                else record.service_port
            )
        if xray_api_port is None:
            xray_api_port = (
                self._prompt_port(
                    f"Enter new {XRAY_PORT_LABEL}", record.xray_api_port, name
                )
                if ask
                else record.xray_api_port
            )
        if inbounds is None:
            new_inbounds = (
                parse_inbounds(
                    self.prompter.ask_text(
                        "Enter INBOUNDS (comma-separated, empty for all)",
                        record.inbounds_value,
                    )
                )
                if ask
                else record.inbounds
            )
        else:
            new_inbounds = parse_inbounds(inbounds)

        self.allocator.validate_pair(service_port, xray_api_port, excluding_name=name)
        _step(op, "ports.validate", detail=f"{service_port}/{xray_api_port}")

        if not assume_yes and not self.prompter.confirm("Apply changes?", default=True):
            _step(op, "confirm", status="skipped", detail="cancelled by operator")
            return OperationOutcome(record=record, cancelled=True)

        backend = self.backend_for(record.method)
        backend.rewrite_config(record, (service_port, xray_api_port), new_inbounds)
        _step(op, "backend.rewrite_config", detail=record.method.value)

        updated = self.store.update(
            name,
            {
                UpdatableField.SERVICE_PORT: service_port,
                UpdatableField.XRAY_API_PORT: xray_api_port,
                UpdatableField.INBOUNDS: new_inbounds,
            },
        )
        _step(op, "registry.update", detail=name)

        backend.restart(updated)
        _step(op, "backend.restart", detail=name)

        changed = updated.ports != record.ports or updated.inbounds != record.inbounds
        return OperationOutcome(record=updated, changed=changed)

    def _prompt_port(self, message: str, default: int, name: str) -> int:
        while True:
            port = self.prompter.ask_port(message, default)
            check = self.allocator.check_port(port, excluding_name=name)
            if check.available:
                return port
            self.prompter.notify(f"{check.describe()} Please choose a different port.")

    # ------------------------------------------------------------------
    # Uninstall
    # ------------------------------------------------------------------
    def uninstall(
        self,
        name: str,
        *,
        remove_data: bool | None = None,
        assume_yes: bool = False,
        op: OperationScope | None = None,
    ) -> OperationOutcome:
        """Tear down a node and remove it from the registry."""
        record = self.store.require(name)
        if not assume_yes and not self.prompter.confirm(
            f"Are you sure you want to uninstall '{name}'?", default=False
        ):
            _step(op, "confirm", status="skipped", detail="cancelled by operator")
            return OperationOutcome(record=record, cancelled=True)

        if remove_data is None:
            remove_data = not assume_yes and self.prompter.confirm(
                "Also remove data directory (certificates, configs)?", default=False
            )

        backend = self.backend_for(record.method)
        warnings = backend.teardown(record, remove_data)
        for warning in warnings:
            _step(op, "backend.teardown", status="warning", detail=warning)
        _step(op, "backend.teardown", detail=f"remove_data={remove_data}")

        self.store.delete(name)
        _step(op, "registry.delete", detail=name)
        logger.info("Uninstalled node %s (data removed: %s)", name, remove_data)
        return OperationOutcome(record=record, changed=True, warnings=warnings)

    # ------------------------------------------------------------------
    # Queries and delegation
    # ------------------------------------------------------------------
    def status(self, name: str | None = None) -> list[NodeStatus]:
        """Return live status for one node or every registered node."""
        records = [self.store.require(name)] if name is not None else self.store.list()
        statuses: list[NodeStatus] = []
        for record in records:
            backend = self.backend_for(record.method)
            running = backend.is_running(record.name)
            identifier = backend.runtime_identifier(record.name) if running else None
            statuses.append(NodeStatus(record=record, running=running, identifier=identifier))
        return statuses

    def start(self, name: str) -> NodeRecord:
        """Start node *name*."""
        record = self.store.require(name)
        self.backend_for(record.method).start(record)
        return record

    def stop(self, name: str) -> NodeRecord:
        """Stop node *name*."""
        record = self.store.require(name)
        self.backend_for(record.method).stop(record)
        return record

    def restart(self, name: str) -> NodeRecord:
        """Restart node *name*."""
        record = self.store.require(name)
        self.backend_for(record.method).restart(record)
        return record

    def logs(self, name: str, *, follow: bool = False) -> str | None:
        """Return (or stream) logs for node *name*."""
        record = self.store.require(name)
        return self.backend_for(record.method).logs(record, follow=follow)

    def update(self, name: str) -> NodeRecord:
        """Refresh the image or code of node *name* and restart it."""
        record = self.store.require(name)
        self.backend_for(record.method).update(record)
        return record

    def list_names(self) -> list[str]:
        """Return registered node names in creation order."""
        return self.store.names()


def _step(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: object = None,
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = ["NodeOrchestrator", "NodeStatus", "OperationOutcome"]
