from __future__ import annotations

import atexit
import logging

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from resonance.config import Settings, load_settings
from resonance.executor import JobExecutor
from resonance.mcp_tools import ToolRegistry
from resonance.registry import JobRegistry
from resonance.services.engine import WhisperEngine
from resonance.services.provisioner import EnvironmentProvisioner
from resonance.services.reconciler import ArtifactReconciler
from resonance.worker import BackgroundWorker

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
logger = logging.getLogger(__name__)


class AppRuntime:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        settings.data_dir.mkdir(parents=True, exist_ok=True)

        self.registry = JobRegistry()
        self.provisioner = EnvironmentProvisioner(
            settings.install_root,
            engine_package=settings.engine_package,
            install_timeout_seconds=settings.install_timeout_seconds,
        )
        self.executor = JobExecutor(
            registry=self.registry,
            provisioner=self.provisioner,
            engine=WhisperEngine(),
            reconciler=ArtifactReconciler(),
        )
        self.worker = BackgroundWorker(
            registry=self.registry,
            executor=self.executor,
            concurrency=settings.max_concurrent_jobs,
            poll_interval_seconds=settings.poll_interval_seconds,
        )

    def close(self) -> None:
        self.worker.stop()


def create_app(runtime: AppRuntime) -> FastMCP:
    mcp = FastMCP(name="resonance")

    tools = ToolRegistry(runtime.registry, runtime.executor, runtime.worker)
    tools.register(mcp)

    @mcp.custom_route(runtime.settings.health_path, methods=["GET"])
    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "ok": True,
                "worker_running": runtime.worker.is_running,
                "environment_ready": runtime.provisioner.state.ready,
                "data_dir": str(runtime.settings.data_dir),
                "mcp_path": runtime.settings.mcp_path,
            }
        )

    return mcp


def cli() -> None:
    settings = load_settings()
    runtime = AppRuntime(settings)
    runtime.worker.start()
    atexit.register(runtime.close)

    app = create_app(runtime)
    logger.info("Starting MCP server on %s:%s%s", settings.host, settings.port, settings.mcp_path)
    app.run(
        transport="http",
        host=settings.host,
        port=settings.port,
        path=settings.mcp_path,
    )


if __name__ == "__main__":
    cli()
