"""Application bootstrap for KubeMend.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → status/cooldown stores
              → remediation + notification dispatchers → pipeline
              → policy reconciler → policy watcher (primed) → persistence
              → event watcher → REST

Shutdown is graceful: health turns 503, watchers stop first so no new
events arrive, in-flight remediations drain, then cooldown persistence
takes a final snapshot before HTTP and Kubernetes clients close.  Each
component's stop error is caught and logged independently.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from kubemend.config import load_config
from kubemend.models.config import KubeMendConfig
from kubemend.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from kubemend.collector.event_watcher import EventWatcher
    from kubemend.collector.policy_watcher import PolicyWatcher
    from kubemend.controller import PolicyReconciler, PolicyStore
    from kubemend.recorder import EventRecorder
    from kubemend.remediation.cooldown import CooldownStore
    from kubemend.remediation.dispatcher import RemediationDispatcher
    from kubemend.remediation.persistence import CooldownPersistence
    from kubemend.remediation.pipeline import RemediationPipeline
    from kubemend.remediation.status import StatusAggregator

_SHUTDOWN_GRACE_SECONDS = 15
_DRAIN_TIMEOUT_SECONDS = 30


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class KubeMendApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already
    stopped) is safe.
    """

    def __init__(self, config: KubeMendConfig | None = None) -> None:
        self.config: KubeMendConfig | None = config

        self._api_client: Any = None
        self._core_v1: Any = None
        self._batch_v1: Any = None
        self._custom: Any = None

        self._policy_store: PolicyStore | None = None
        self._aggregator: StatusAggregator | None = None
        self._recorder: EventRecorder | None = None
        self._cooldowns: CooldownStore | None = None
        self._persistence: CooldownPersistence | None = None
        self._dispatcher: RemediationDispatcher | None = None
        self._pipeline: RemediationPipeline | None = None
        self._reconciler: PolicyReconciler | None = None
        self._policy_watcher: PolicyWatcher | None = None
        self._event_watcher: EventWatcher | None = None
        self._rest_server: Any = None

        self._background_tasks: list[asyncio.Task[Any]] = []
        self.shutdown_event = asyncio.Event()
        self.stopped = asyncio.Event()

        self._running = False
        self._log: FilteringBoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        if self.config is None:
            self.config = load_config()

        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("kubemend starting", version=_kubemend_version(), cluster_id=self.config.cluster_id)

        await self._start_k8s_client()
        await self._start_core()
        await self._start_policies()
        await self._start_persistence()
        await self._start_event_watcher()
        await self._start_rest()

        self._running = True
        self._log.info("kubemend started", port=self.config.api.port, policies=len(self._policy_store or ()))

    async def _start_k8s_client(self) -> None:
        """Initialise the kubernetes-asyncio client from in-cluster config or kubeconfig."""
        assert self._log is not None
        self._log.debug("starting k8s client")
        try:
            import kubernetes_asyncio.config as k8s_config
            from kubernetes_asyncio import client as k8s_client

            try:
                k8s_config.load_incluster_config()  # type: ignore[no-untyped-call]
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")

            self._api_client = k8s_client.ApiClient()
            self._core_v1 = k8s_client.CoreV1Api(self._api_client)
            self._batch_v1 = k8s_client.BatchV1Api(self._api_client)
            self._custom = k8s_client.CustomObjectsApi(self._api_client)
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _start_core(self) -> None:
        """Build the stores, dispatchers and the event pipeline."""
        assert self._log is not None
        assert self.config is not None
        try:
            from kubemend.controller import PolicyStore
            from kubemend.notifications import NotificationDispatcher
            from kubemend.recorder import EventRecorder
            from kubemend.remediation.cooldown import CooldownStore
            from kubemend.remediation.dispatcher import RemediationDispatcher
            from kubemend.remediation.owner import OwnerResolver
            from kubemend.remediation.persistence import CooldownPersistence
            from kubemend.remediation.pipeline import RemediationPipeline
            from kubemend.remediation.status import StatusAggregator

            self._policy_store = PolicyStore()
            self._cooldowns = CooldownStore()
            self._aggregator = StatusAggregator(self._custom)
            self._recorder = EventRecorder(self._core_v1)
            self._persistence = CooldownPersistence(
                self._core_v1,
                self._cooldowns,
                policies=self._policy_store.active_policies,
                config=self.config.persistence,
            )
            self._dispatcher = RemediationDispatcher(self._core_v1, self.config.remediation)
            notifier = NotificationDispatcher(
                self._core_v1,
                self._aggregator,
                timeout=float(self.config.notifications.timeout_seconds),
            )
            self._pipeline = RemediationPipeline(
                policies=self._policy_store.active_policies,
                owners=OwnerResolver(self._core_v1, self._batch_v1),
                cooldowns=self._cooldowns,
                dispatcher=self._dispatcher,
                notifier=notifier,
                aggregator=self._aggregator,
                config=self.config.pipeline,
                recorder=self._recorder,
            )
            self._log.info(
                "remediation pipeline ready",
                max_concurrency=self.config.pipeline.max_concurrency,
                max_attempts=self.config.remediation.max_attempts,
            )
        except Exception as exc:
            raise _ComponentError("pipeline", exc) from exc

    async def _start_policies(self) -> None:
        """List existing policies, then keep watching for changes."""
        assert self._log is not None
        assert self.config is not None
        assert self._policy_store is not None and self._cooldowns is not None
        assert self._aggregator is not None
        try:
            from kubemend.collector.policy_watcher import PolicyWatcher
            from kubemend.controller import PolicyReconciler

            self._reconciler = PolicyReconciler(
                self._policy_store,
                self._aggregator,
                self._cooldowns,
                persistence=self._persistence,
                pipeline=self._pipeline,
                resync_interval=self.config.pipeline.policy_resync,
                resolve_token=self._dispatcher.resolve_token if self._dispatcher is not None else None,
                recorder=self._recorder,
            )
            self._policy_watcher = PolicyWatcher(
                self._custom,
                self._reconciler,
                cluster_id=self.config.cluster_id,
                namespace=self.config.watch_namespace,
            )
            await self._policy_watcher.prime()
            await self._policy_watcher.start()
            await self._reconciler.start()
            self._log.info("policy watcher started", policies=len(self._policy_store))
        except Exception as exc:
            raise _ComponentError("policy_watcher", exc) from exc

    async def _start_persistence(self) -> None:
        """Start periodic cooldown snapshots.  Non-fatal."""
        assert self._log is not None
        if self._persistence is None:
            return
        try:
            await self._persistence.start()
        except Exception as exc:
            self._log.warning(
                "cooldown persistence failed to start; cooldowns will not survive restarts",
                error=str(exc),
            )
            self._persistence = None

    async def _start_event_watcher(self) -> None:
        assert self._log is not None
        assert self.config is not None
        assert self._pipeline is not None
        try:
            from kubemend.collector.event_watcher import EventWatcher

            watcher = EventWatcher(
                self._core_v1,
                cluster_id=self.config.cluster_id,
                namespace=self.config.watch_namespace,
            )
            watcher.add_callback(self._pipeline.handle_event)
            await watcher.start()
            self._event_watcher = watcher
            self._log.info("event watcher started", namespace=self.config.watch_namespace or "*")
        except Exception as exc:
            raise _ComponentError("event_watcher", exc) from exc

    async def _start_rest(self) -> None:
        """Start the uvicorn REST server."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting rest api")
        try:
            import uvicorn

            from kubemend.api import create_app

            fastapi_app = create_app(
                policy_store=self._policy_store,
                cooldowns=self._cooldowns,
                persistence=self._persistence,
                shutdown=self.shutdown_event,
            )
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest api started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if self.stopped.is_set() or (not self._running and self._log is None):
            self.stopped.set()
            return

        log = self._log or get_logger("app")
        log.info("kubemend shutting down")
        self.shutdown_event.set()
        self._running = False

        # Stop producers before consumers
        await self._stop_component("event_watcher", self._event_watcher)
        await self._stop_component("policy_watcher", self._policy_watcher)
        await self._stop_component("reconciler", self._reconciler)

        if self._pipeline is not None:
            drained = await self._pipeline.drain(timeout=_DRAIN_TIMEOUT_SECONDS)
            if not drained:
                log.warning("in-flight remediations abandoned at shutdown")

        await self._stop_component("persistence", self._persistence)
        await self._stop_component("remediation_dispatcher", self._dispatcher)

        if self._rest_server is not None:
            self._rest_server.should_exit = True
        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        await self._stop_k8s_client()
        log.info("kubemend stopped")
        self.stopped.set()

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() on a component if it has that method, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        # Persistence bounds its own final sync; give it room
        timeout = _DRAIN_TIMEOUT_SECONDS + 5 if name == "persistence" else _SHUTDOWN_GRACE_SECONDS
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=timeout)
        except TimeoutError:
            log.warning("component stop timed out", component=name, timeout=timeout)
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))

    async def _stop_k8s_client(self) -> None:
        """Close the kubernetes-asyncio ApiClient connection pool."""
        if self._api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._api_client.close()
        except Exception as exc:
            log.debug("k8s client close raised (non-fatal)", error=str(exc))
        self._api_client = None


def _kubemend_version() -> str:
    from kubemend import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown completes."""
    app = KubeMendApp()
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        await app.stopped.wait()
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()
