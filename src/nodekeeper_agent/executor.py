"""Convergence executor.

Drives one node towards one ConfigSet in four phases:
- Phase 1: Packages (install / remove)
- Phase 2: Files (content, directories, symlinks, removal)
- Phase 3: Services (enable, start/stop, restart on changed files)
- Phase 4: Execs (run on changed files)

The order is fixed: services and execs key off the files phase's
changed set from the same pass.

Each phase has exit conditions:
- Packages and files stop at the first error
- Service restarts and execs collect errors and keep going, so one
  failing subscriber never blocks the others
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional
import logging
import os

from .config_repo import ConfigRepo
from .errors import AggregateError, NodekeeperError, UnrecognizedValueError
from .handlers.files import parse_mode, sha256_hex
from .models import (
    ConfigSet,
    Exec,
    File,
    FileEnsure,
    ManagedNode,
    Package,
    PackageEnsure,
    Service,
    ServiceStatus,
    label_match,
)
from .system import System
from .templates import TemplateRenderer, template_context

logger = logging.getLogger(__name__)

DEFAULT_DIRECTORY_MODE = 0o755


class ReconcileResult(str, Enum):
    """Result of reconciliation.

    - APPLIED: every phase converged
    - SKIPPED: the ConfigSet does not select this node
    - FAILED: a phase stopped with an error
    """
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ReconcileError:
    """Detailed error from failed reconciliation."""
    resource: str
    message: str


@dataclass
class ReconcileResponse:
    """Response from reconciliation attempt."""
    result: ReconcileResult
    changed_files: List[str] = field(default_factory=list)
    error: Optional[ReconcileError] = None


class ConvergenceExecutor:
    """Applies ConfigSets to the local host.

    Idempotent: calling reconcile() again with no external change
    reports no changed files and performs no writes.
    """

    def __init__(self, system: System, repo: ConfigRepo, renderer: Optional[TemplateRenderer] = None):
        self.system = system
        self.repo = repo
        self.renderer = renderer or TemplateRenderer()

    def reconcile(self, configset: ConfigSet, node: ManagedNode) -> ReconcileResponse:
        """Main reconciliation entry point."""
        if not label_match(node.labels, configset.labels):
            logger.debug(f"ConfigSet {configset.name} does not select node {node.name}")
            return ReconcileResponse(result=ReconcileResult.SKIPPED)

        logger.info(f"Reconciling ConfigSet {configset.namespace}/{configset.name} on {node.name}")
        changed_files: List[str] = []
        phase = "packages"

        try:
            self._phase_1_packages(configset.packages)

            phase = "files"
            self._phase_2_files(configset, node, changed_files)

            phase = "services"
            self._phase_3_services(configset.services, changed_files)

            phase = "execs"
            self._phase_4_execs(configset.executions, changed_files)

        except (NodekeeperError, OSError) as e:
            logger.error(f"ConfigSet {configset.name} failed in {phase} phase: {e}", exc_info=True)
            return ReconcileResponse(
                result=ReconcileResult.FAILED,
                changed_files=changed_files,
                error=ReconcileError(f"{configset.name}/{phase}", str(e)),
            )

        if changed_files:
            logger.info(f"ConfigSet {configset.name} changed {len(changed_files)} files: {changed_files}")
        return ReconcileResponse(result=ReconcileResult.APPLIED, changed_files=changed_files)

    def _phase_1_packages(self, packages: List[Package]) -> None:
        """Phase 1: Packages.

        Reads the installed list once. An unknown ensure value stops the
        phase before any later entry is applied.
        """
        if not packages:
            return

        handler = self.system.package
        installed = set(handler.list())

        for pkg in packages:
            ensure = PackageEnsure.from_string(pkg.ensure)
            if ensure == PackageEnsure.INSTALLED:
                if pkg.name not in installed:
                    handler.install(pkg.name)
                    installed.add(pkg.name)
            elif ensure == PackageEnsure.ABSENT:
                if pkg.name in installed:
                    handler.remove(pkg.name)
                    installed.discard(pkg.name)
            else:
                raise UnrecognizedValueError(f"unhandled ensure {pkg.ensure!r} for package {pkg.name!r}")

    def _phase_2_files(self, configset: ConfigSet, node: ManagedNode, changed_files: List[str]) -> None:
        """Phase 2: Files.

        Appends every path created, rewritten or removed to `changed_files`.
        """
        for file in configset.files:
            ensure = FileEnsure.from_string(file.ensure)
            if ensure == FileEnsure.FILE:
                changed = self._ensure_file(configset.namespace, file, node)
            elif ensure == FileEnsure.DIRECTORY:
                changed = self._ensure_directory(file)
            elif ensure == FileEnsure.SYMLINK:
                changed = self._ensure_symlink(file)
            elif ensure == FileEnsure.ABSENT:
                changed = self._ensure_absent(file)
            else:
                raise UnrecognizedValueError(f"unhandled ensure {file.ensure!r} for file {file.path!r}")

            if changed:
                changed_files.append(file.path)

    def _ensure_file(self, namespace: str, file: File, node: ManagedNode) -> bool:
        handler = self.system.file
        content = file.content.encode("utf-8")

        if file.template:
            context = self.collect_data(namespace, file, node)
            content = self.renderer.render(file.template, context)

        path = Path(file.path)
        try:
            current = path.read_bytes()
        except FileNotFoundError:
            current = b""

        changed = False
        if sha256_hex(current) != sha256_hex(content) or not path.exists():
            logger.info(f"Writing file {file.path}")
            handler.write_content_file(file.path, content)
            changed = True

        handler.chown(file.path, file.owner, file.group)
        handler.set_mode(file.path, file.mode)
        return changed

    def _ensure_directory(self, file: File) -> bool:
        path = Path(file.path)
        if not path.exists():
            mode = parse_mode(file.mode) if file.mode else DEFAULT_DIRECTORY_MODE
            logger.info(f"Creating directory {file.path}")
            path.mkdir(mode=mode)
            # mkdir honours the umask; set the exact mode afterwards
            os.chmod(file.path, mode)
            return True

        if file.mode:
            self.system.file.set_mode(file.path, file.mode)
        return False

    def _ensure_symlink(self, file: File) -> bool:
        path = Path(file.path)
        if path.is_symlink() and os.readlink(file.path) == file.target:
            return False

        logger.info(f"Symlinking {file.path} -> {file.target}")
        if path.is_symlink() or path.exists():
            self.system.file.remove(file.path)
        os.symlink(file.target, file.path)
        return True

    def _ensure_absent(self, file: File) -> bool:
        path = Path(file.path)
        if not path.exists() and not path.is_symlink():
            return False
        self.system.file.remove(file.path)
        return True

    def collect_data(self, namespace: str, file: File, node: ManagedNode) -> Dict:
        """Build the template context for a file.

        Secret reference names are templates themselves, rendered with the
        node labels. Any missing reference aborts the file set.
        """
        secrets: Dict[str, str] = {}
        for ref in file.secret_refs:
            name = self.renderer.render(ref, template_context(node.labels, {}, {})).decode("utf-8").strip()
            secrets.update(self.repo.get_secret(namespace, name).data)

        config_maps: Dict[str, str] = {}
        for ref in file.config_map_refs:
            config_maps.update(self.repo.get_configmap(namespace, ref).data)

        return template_context(node.labels, secrets, config_maps)

    def _phase_3_services(self, services: List[Service], changed_files: List[str]) -> None:
        """Phase 3: Services.

        The restart set is computed before any state change; restarts run
        last and their failures are aggregated.
        """
        handler = self.system.service
        changed = set(changed_files)

        restart: List[str] = []
        for svc in services:
            if ServiceStatus.from_string(svc.ensure) != ServiceStatus.RUNNING:
                continue
            if changed.intersection(svc.subscribe_files) and svc.name not in restart:
                restart.append(svc.name)

        for svc in services:
            if svc.enable:
                handler.enable(svc.name)
            else:
                handler.disable(svc.name)

            if svc.arguments:
                handler.set_arguments(svc.name, svc.arguments)

            status = handler.status(svc.name)
            ensure = ServiceStatus.from_string(svc.ensure)
            if ensure == ServiceStatus.RUNNING:
                if status != ServiceStatus.RUNNING:
                    handler.start(svc.name)
            elif ensure == ServiceStatus.STOPPED:
                if status != ServiceStatus.STOPPED:
                    handler.stop(svc.name)
            elif svc.ensure:
                raise UnrecognizedValueError(f"unhandled ensure {svc.ensure!r} for service {svc.name!r}")

        errors: List[Exception] = []
        for name in restart:
            logger.info(f"Restarting service {name} after file change")
            try:
                handler.restart(name)
            except NodekeeperError as e:
                logger.error(f"Failed to restart service {name}: {e}")
                errors.append(e)

        if errors:
            raise AggregateError(errors)

    def _phase_4_execs(self, executions: List[Exec], changed_files: List[str]) -> None:
        """Phase 4: Execs subscribed to a changed file, each run once."""
        handler = self.system.exec
        changed = set(changed_files)

        errors: List[Exception] = []
        for exe in executions:
            if not changed.intersection(exe.subscribe_files):
                continue

            logger.info(f"Running exec {exe.command} {' '.join(exe.args)}")
            try:
                handler.run_command(exe.command, *exe.args)
            except NodekeeperError as e:
                logger.error(f"Exec {exe.command} failed: {e}")
                errors.append(e)

        if errors:
            raise AggregateError(errors)
