"""Lifecycle controller: the only writer of project state.

create:  NotExists -> Validating -> Provisioning -> Active
         Provisioning -> RollingBack -> NotExists on any fatal step failure
delete:  Active -> Deleting -> Deleted (registry row removed)
"""

import logging
import shutil
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from devhost.config import DevHostConfig
from devhost.database import Database, open_database
from devhost.errors import (
    AlreadyExists,
    DevHostError,
    EngineUnreachable,
    InvalidName,
    ProjectNotFound,
    ProvisioningCancelled,
    ProvisioningFailed,
    RollbackFailed,
)
from devhost.locking import ProjectLock
from devhost.models import (
    OCCUPYING_STATES,
    DatabaseBinding,
    DatabaseEngine,
    Project,
    ProjectKind,
    ProjectState,
    RoutingBinding,
    TlsState,
)
from devhost.runner import CommandRunner
from devhost.saga import Saga
from devhost.scaffolding.base import Scaffolder, ScaffoldContext
from devhost.scaffolding.registry import default_engines, get_scaffolder
from devhost.services.database_service import DatabaseService
from devhost.services.permission_service import PermissionService
from devhost.services.project_config import (
    build_project_config,
    load_credentials,
    read_project_config,
    write_project_config,
)
from devhost.services.routing_service import RoutingConfigurator
from devhost.validation import is_valid_name, validate_name

logger = logging.getLogger(__name__)


class LifecycleController:
    """Creates, deletes and maintains projects across every subsystem.

    All collaborators are built from the one immutable config handed in at
    construction; tests substitute any of them.
    """

    def __init__(
        self,
        config: DevHostConfig,
        db: Database | None = None,
        runner: CommandRunner | None = None,
        permissions: PermissionService | None = None,
        databases: DatabaseService | None = None,
        routing: RoutingConfigurator | None = None,
        scaffolder_factory: Callable[[ProjectKind], Scaffolder] | None = None,
    ) -> None:
        self.config = config
        self.runner = runner or CommandRunner()
        self.db = db or open_database(config.state_db)
        self.permissions = permissions or PermissionService(config, self.runner)
        self.databases = databases or DatabaseService(config)
        self.routing = routing or RoutingConfigurator(config, self.runner)
        self._scaffolder_factory = scaffolder_factory or get_scaffolder
        self._cancelled = threading.Event()
        self._step: str | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    def cancel(self) -> None:
        """Request cancellation. Honoured at the next step boundary."""
        self._cancelled.set()

    def _begin_step(self, name: str, step: str) -> None:
        if self._cancelled.is_set():
            raise ProvisioningCancelled(name, step)
        self._step = step
        logger.debug(f"{name}: {step}")

    def _lock(self, name: str) -> ProjectLock:
        if not is_valid_name(name):
            raise InvalidName(name)
        return ProjectLock(self.config.lock_dir, name)

    def _as_devhost_error(self, name: str, error: Exception) -> DevHostError:
        if not isinstance(error, DevHostError):
            logger.debug(f"{name}: unexpected error during {self._step}", exc_info=error)
            return ProvisioningFailed(name, self._step, error)
        error.project = error.project or name
        error.step = error.step or self._step
        return error

    def _lookup_state(self, name: str) -> ProjectState | None:
        row = self.db.get_project(name)
        return ProjectState(row["state"]) if row else None

    @staticmethod
    def _remove_tree(root: Path) -> None:
        if root.exists():
            shutil.rmtree(root)

    # ─────────────────────────────────────────────────────────────────────────
    # Create
    # ─────────────────────────────────────────────────────────────────────────

    def create(
        self,
        name: str,
        kind: ProjectKind = ProjectKind.PLAIN,
        source: str | None = None,
        engines: tuple[DatabaseEngine, ...] | None = None,
    ) -> Project:
        """Provision a project, rolling back every completed step on failure.

        Raises the original error after a clean rollback, or RollbackFailed
        (exit code 3) when artifacts could not be removed.
        """
        validate_name(name, self._lookup_state)
        if engines is None:
            engines = default_engines(kind)
        engines = tuple(dict.fromkeys(engines))
        root = self.config.project_root(name)

        with self._lock(name):
            # Re-check under the lock; the insert below is the atomic reservation
            validate_name(name, self._lookup_state)
            if root.exists() and any(root.iterdir()):
                raise AlreadyExists(name, str(root))

            stale = self.db.get_project(name)
            if stale and ProjectState(stale["state"]) not in OCCUPYING_STATES:
                self.db.delete_project(name)

            self.db.insert_project(
                name,
                kind.value,
                ProjectState.PROVISIONING.value,
                str(root),
                source=source,
                created_by=self.config.owner_user,
            )
            logger.info(f"Provisioning {kind.value} project {name}")

            saga = Saga(f"create {name}")
            self._step = None
            try:
                self._provision(name, kind, root, source, engines, saga)
            except Exception as e:
                error = self._as_devhost_error(name, e)
                self._roll_back(name, saga, error)
                if error is e:
                    raise
                raise error from e

            saga.commit()
            self.db.update_project(name, state=ProjectState.ACTIVE.value)
            logger.info(f"Project {name} is active")
            return self.get_project(name)

    def _provision(
        self,
        name: str,
        kind: ProjectKind,
        root: Path,
        source: str | None,
        engines: tuple[DatabaseEngine, ...],
        saga: Saga,
    ) -> None:
        scaffolder = self._scaffolder_factory(kind)
        bindings = [self.databases.new_binding(name, engine) for engine in engines]

        self._begin_step(name, "filesystem")
        root.mkdir(parents=True, exist_ok=True)
        saga.add(f"directory {root}", lambda: self._remove_tree(root))

        ctx = ScaffoldContext(
            name=name,
            kind=kind,
            root=root,
            server_name=self.config.local_hostname(name),
            config=self.config,
            runner=self.runner,
            databases=bindings,
            source=source,
        )

        self._begin_step(name, "scaffold")
        scaffolder.bootstrap(ctx)
        ctx.public_dir.mkdir(exist_ok=True)
        scaffolder.configure(ctx)
        domain = self.config.project_domain(name) or self.config.local_hostname(name)
        write_project_config(root, build_project_config(name, kind, domain, root, bindings))

        self._begin_step(name, "permissions")
        self.permissions.apply_policy(root)

        for binding in bindings:
            self._begin_step(name, f"database:{binding.engine.value}")
            self._provision_database(name, binding, saga)

        if bindings:
            self._begin_step(name, "post-provision")
            scaffolder.post_provision(ctx)
            # Migrations and installs create files with the acting user's group
            self.permissions.apply_policy(root)

        self._begin_step(name, "virtual-host")
        routing = self.routing.configure_virtual_host(name, root, saga)
        self.db.update_project(
            name,
            server_name=routing.server_name,
            virtual_host_path=str(routing.virtual_host_path),
        )

        self._begin_step(name, "domain")
        routing = self.routing.configure_domain(name, root, routing, saga)
        self.db.update_project(
            name,
            domain=routing.domain,
            tls_state=routing.tls_state.value,
            tunnel_rule_id=routing.tunnel_rule_id,
        )

    def _provision_database(self, name: str, binding: DatabaseBinding, saga: Saga) -> None:
        artifact = f"{binding.engine.value} schema {binding.schema_name} and user {binding.username}"
        # Recorded first so a later delete finds whatever a failed rollback leaves
        self.db.add_database_binding(
            name,
            binding.engine.value,
            binding.schema_name,
            binding.username,
            binding.grant_scope,
        )
        try:
            self.databases.provision(binding)
        except EngineUnreachable:
            # Nothing can have been created on an engine that was never reached
            raise
        except Exception:
            saga.add(artifact, lambda: self.databases.deprovision(binding))
            raise
        saga.add(artifact, lambda: self.databases.deprovision(binding))

    def _roll_back(self, name: str, saga: Saga, cause: Exception) -> None:
        logger.warning(f"{name}: {cause}; rolling back {len(saga)} completed steps")
        self.db.update_project(name, state=ProjectState.ROLLING_BACK.value)

        failed = saga.compensate()
        if failed:
            self.db.update_project(name, leftover_artifacts=failed)
            raise RollbackFailed(name, failed, cause=cause) from cause

        self.db.delete_project(name)
        logger.info(f"{name}: rollback complete")

    # ─────────────────────────────────────────────────────────────────────────
    # Delete
    # ─────────────────────────────────────────────────────────────────────────

    def delete(self, name: str) -> dict[str, Any]:
        """Tear a project down: routing, then databases, then filesystem.

        Works from derived names when the registry row is gone, and may be
        re-run after an interrupted delete.
        """
        with self._lock(name) as lock:
            row = self.db.get_project(name)
            root = Path(row["path"]) if row else self.config.project_root(name)
            if row is None and not root.exists():
                lock.discard()
                raise ProjectNotFound(name)

            if row:
                self.db.update_project(name, state=ProjectState.DELETING.value)
            logger.info(f"Deleting project {name}")

            try:
                removed = self._teardown(name, row, root)
            except Exception as e:
                error = self._as_devhost_error(name, e)
                if error is e:
                    raise
                raise error from e

            self.db.delete_project(name)
            lock.discard()
            logger.info(f"Project {name} deleted")
            return {"name": name, "state": ProjectState.DELETED.value, "removed": removed}

    def _teardown(self, name: str, row: dict[str, Any] | None, root: Path) -> list[str]:
        removed: list[str] = []

        self._step = "routing"
        binding = self._routing_binding(row) if row else None
        removed += self.routing.teardown(name, binding)

        self._step = "databases"
        for db_binding in self._bindings_to_remove(name, row, root):
            try:
                self.databases.deprovision(db_binding)
            except EngineUnreachable:
                if row is not None:
                    raise
                # Guessed engine on a registry-less delete
                logger.warning(f"{name}: {db_binding.engine.value} unreachable, skipped")
                continue
            removed.append(f"{db_binding.engine.value} schema {db_binding.schema_name}")

        self._step = "filesystem"
        if root.exists():
            shutil.rmtree(root)
            removed.append(f"directory {root}")
        return removed

    def _bindings_to_remove(
        self, name: str, row: dict[str, Any] | None, root: Path
    ) -> list[DatabaseBinding]:
        if row is not None:
            engines = [DatabaseEngine(b["engine"]) for b in self.db.list_database_bindings(name)]
        else:
            values = read_project_config(root)
            engines = [e for e in DatabaseEngine if f"DB_NAME_{e.config_key}" in values]
            if not values:
                engines = list(DatabaseEngine)
        return [DatabaseBinding.derive(name, engine) for engine in engines]

    # ─────────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────────

    def _routing_binding(self, row: dict[str, Any]) -> RoutingBinding:
        tls_state = TlsState(row["tls_state"] or TlsState.NONE.value)
        binding = RoutingBinding(
            virtual_host_path=Path(row["virtual_host_path"]) if row["virtual_host_path"] else None,
            server_name=row["server_name"],
            domain=row["domain"],
            tls_state=tls_state,
            tunnel_rule_id=row["tunnel_rule_id"],
        )
        if binding.domain and tls_state in (TlsState.ISSUED, TlsState.EXPIRED):
            certificate, key = self.routing.tls.certificate_paths(binding.domain)
            binding.certificate_path, binding.key_path = str(certificate), str(key)
        return binding

    def _to_project(self, row: dict[str, Any], with_credentials: bool = False) -> Project:
        root = Path(row["path"])
        credentials = load_credentials(root) if with_credentials else {}
        databases = [
            DatabaseBinding(
                engine=DatabaseEngine(b["engine"]),
                schema_name=b["schema_name"],
                username=b["username"],
                password=credentials.get(DatabaseEngine(b["engine"]), ""),
                grant_scope=b["grant_scope"],
            )
            for b in self.db.list_database_bindings(row["name"])
        ]
        return Project(
            name=row["name"],
            kind=ProjectKind(row["kind"]),
            filesystem_root=root,
            state=ProjectState(row["state"]),
            databases=databases,
            routing=self._routing_binding(row),
            source=row["source"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_modified_at=datetime.fromisoformat(row["updated_at"]),
        )

    def list_projects(self) -> list[Project]:
        return [self._to_project(row) for row in self.db.list_projects()]

    def get_project(self, name: str, with_credentials: bool = False) -> Project:
        """Look up a project. Credentials are read from its configuration file."""
        row = self.db.get_project(name)
        if row is None:
            raise ProjectNotFound(name)
        return self._to_project(row, with_credentials=with_credentials)

    def leftover_artifacts(self, name: str) -> list[str]:
        row = self.db.get_project(name)
        return row["leftover_artifacts"] if row else []

    # ─────────────────────────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────────────────────────

    def repair(self, name: str) -> dict[str, Any]:
        """Re-apply the permission policy to an active project's tree."""
        with self._lock(name):
            project = self.get_project(name)
            if project.state is not ProjectState.ACTIVE:
                raise DevHostError(
                    code="PROJECT_NOT_ACTIVE",
                    message=f"Project '{name}' is {project.state.value}, not active",
                    suggestion=f"Run 'devhost delete {name}' to clean it up",
                    project=name,
                )
            changed = self.permissions.apply_policy(project.filesystem_root)
            logger.info(f"{name}: permission policy re-applied ({changed} paths changed)")
            return {"name": name, "path": str(project.filesystem_root), "changed": changed}

    def refresh_tls(self, name: str) -> Project:
        """Feed the certificate renewal signal into a project's routing."""
        with self._lock(name):
            project = self.get_project(name)
            routing = self.routing.refresh_tls(name, project.filesystem_root, project.routing)
            self.db.update_project(
                name,
                domain=routing.domain,
                tls_state=routing.tls_state.value,
                tunnel_rule_id=routing.tunnel_rule_id,
            )
            return self.get_project(name)

    def setup_host(self) -> dict[str, Any]:
        """Prepare the host: directories, shared group, memberships, nginx include."""
        self.config.ensure_directories()
        membership = self.permissions.ensure_host_policy()
        include_created = self.routing.nginx.ensure_include()
        if include_created:
            self.routing.nginx.test_config()
            self.routing.nginx.reload()
        return {
            "group": self.config.shared_group,
            "projects_root": str(self.config.projects_root),
            "members_added": membership["added"],
            "members_skipped": membership["skipped"],
            "nginx_include": str(self.routing.nginx.include_file),
        }
