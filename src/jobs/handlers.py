"""
Job handlers: one per job kind.

A handler has two phases. ``run`` executes while the job's SSH session is
open and returns the job result. ``write_back`` runs after the session is
released and applies the result to the state store; a failure there means
the remote side effect already happened.

Handlers only read the frozen job payload, never the live state store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from core.errors import PersistenceError
from inventory.models import Plugin
from inventory.reconcile import ReconciliationService
from inventory.store import StateStore
from remote.gateway import RemoteCommandGateway
from remote.ssh_session import SSHSession

from .events import server_paths
from .models import Job, JobKind

logger = logging.getLogger(__name__)

ONBOARDING_PATH = "/onboarding/dokku-install"


@dataclass
class JobContext:
    job: Job
    session: Optional[SSHSession]
    gateway: RemoteCommandGateway
    reconciler: ReconciliationService
    store: StateStore
    install_timeout: Optional[int] = None


class JobHandler:
    kind: JobKind
    extra_paths: Tuple[str, ...] = ()

    def run(self, ctx: JobContext) -> Dict[str, Any]:
        raise NotImplementedError

    def write_back(self, ctx: JobContext, result: Dict[str, Any]) -> None:
        """Persist the result. Default: nothing to persist."""

    def revalidate_paths(self, job: Job) -> Tuple[str, ...]:
        return server_paths(job.server_id, self.extra_paths)


class PluginListHandler(JobHandler):
    """Base for jobs that change plugins and then re-list them."""

    extra_paths = (ONBOARDING_PATH,)

    def change(self, ctx: JobContext) -> Optional[Dict[str, Any]]:
        return None

    def run(self, ctx: JobContext) -> Dict[str, Any]:
        operation = self.change(ctx)
        plugins = ctx.reconciler.reconcile_snapshot(ctx.session, ctx.job.previous_plugins)
        return {
            "operation": operation,
            "plugins": [p.to_dict() for p in plugins],
        }

    def write_back(self, ctx: JobContext, result: Dict[str, Any]) -> None:
        plugins = [Plugin.from_dict(p) for p in result.get("plugins", [])]
        ctx.store.replace_plugins(ctx.job.server_id, plugins)


class InstallPluginHandler(PluginListHandler):
    kind = JobKind.INSTALL_PLUGIN

    def change(self, ctx: JobContext) -> Dict[str, Any]:
        return ctx.gateway.install_plugin(
            ctx.session, ctx.job.input["plugin_name"], ctx.job.input["plugin_url"],
            timeout=ctx.install_timeout,
        )


class TogglePluginHandler(PluginListHandler):
    kind = JobKind.TOGGLE_PLUGIN

    def change(self, ctx: JobContext) -> Dict[str, Any]:
        return ctx.gateway.toggle_plugin(
            ctx.session, ctx.job.input["plugin_name"], ctx.job.input["enabled"],
        )


class DeletePluginHandler(PluginListHandler):
    kind = JobKind.DELETE_PLUGIN

    def change(self, ctx: JobContext) -> Dict[str, Any]:
        return ctx.gateway.delete_plugin(ctx.session, ctx.job.input["plugin_name"])


class SyncPluginsHandler(PluginListHandler):
    kind = JobKind.SYNC_PLUGINS


class ConfigureLetsencryptHandler(JobHandler):
    kind = JobKind.CONFIGURE_LETSENCRYPT

    def run(self, ctx: JobContext) -> Dict[str, Any]:
        return ctx.gateway.configure_letsencrypt(
            ctx.session, ctx.job.input["email"], ctx.job.input.get("auto_generate_ssl", False),
        )

    def write_back(self, ctx: JobContext, result: Dict[str, Any]) -> None:
        if not ctx.store.update_plugin_configuration(ctx.job.server_id, "letsencrypt", result):
            raise PersistenceError(
                f"letsencrypt plugin not tracked on server {ctx.job.server_id}; "
                f"configuration not stored"
            )


class DestroyDatabaseHandler(JobHandler):
    kind = JobKind.DESTROY_DATABASE

    def run(self, ctx: JobContext) -> Dict[str, Any]:
        return ctx.gateway.destroy_database(
            ctx.session, ctx.job.input["database_name"], ctx.job.input["database_type"],
        )

    def write_back(self, ctx: JobContext, result: Dict[str, Any]) -> None:
        ctx.store.record_service_destroyed(
            ctx.job.server_id, ctx.job.input["database_name"], ctx.job.input["database_type"],
        )


class UninstallMonitoringAgentHandler(JobHandler):
    kind = JobKind.UNINSTALL_MONITORING_AGENT

    def run(self, ctx: JobContext) -> Dict[str, Any]:
        return ctx.gateway.uninstall_monitoring_agent(ctx.session)

    def write_back(self, ctx: JobContext, result: Dict[str, Any]) -> None:
        ctx.store.set_monitoring_agent(ctx.job.server_id, None)


class UnlockGitHandler(JobHandler):
    kind = JobKind.UNLOCK_GIT

    def run(self, ctx: JobContext) -> Dict[str, Any]:
        return ctx.gateway.unlock_git(ctx.session, ctx.job.input["app_name"])


HANDLERS: Dict[str, JobHandler] = {
    handler.kind.value: handler for handler in (
        InstallPluginHandler(),
        TogglePluginHandler(),
        DeletePluginHandler(),
        SyncPluginsHandler(),
        ConfigureLetsencryptHandler(),
        DestroyDatabaseHandler(),
        UninstallMonitoringAgentHandler(),
        UnlockGitHandler(),
    )
}


def get_handler(kind: str) -> JobHandler:
    try:
        return HANDLERS[kind]
    except KeyError:
        raise KeyError(f"No handler registered for job kind {kind!r}") from None
