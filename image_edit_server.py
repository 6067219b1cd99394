from typing import Optional

from aiohttp import web
from loguru import logger

from image_editor.backend import EditBackend, GeminiEditBackend
from image_editor.errors import DispatchFailedError, InvalidRequestError, JobNotFoundError
from image_editor.jobs import EditJobService
from image_editor.models import EditorConfig, EditRequest, JobId


class ImageEditServer:
    def __init__(self, service: EditJobService):
        self.service = service
        self.app = web.Application(client_max_size=16 * 1024 * 1024)
        self.app.router.add_post("/jobs", self.handle_dispatch)
        self.app.router.add_get("/jobs/{job_id}", self.handle_status)
        self.app.on_cleanup.append(self._close_platform)
        self.logger = logger
        self._runner: Optional[web.AppRunner] = None

    @classmethod
    def from_backend(
        cls, backend: EditBackend, config: Optional[EditorConfig] = None
    ) -> "ImageEditServer":
        return cls(EditJobService.create(backend, config))

    @classmethod
    def from_env(cls, config: Optional[EditorConfig] = None) -> "ImageEditServer":
        """Build a server backed by Gemini; fails fast without GEMINI_API_KEY"""
        return cls.from_backend(GeminiEditBackend.from_env(), config)

    async def handle_dispatch(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return web.json_response({"error": "The request body must be JSON."}, status=400)

        try:
            edit_request = EditRequest.model_validate(payload if isinstance(payload, dict) else {})
        except ValueError:
            return web.json_response({"error": "The request data is incomplete."}, status=400)

        try:
            response = await self.service.dispatch(edit_request)
        except InvalidRequestError as e:
            self.logger.info(f"Rejected dispatch: {e}")
            return web.json_response({"error": str(e)}, status=400)
        except DispatchFailedError as e:
            return web.json_response({"error": str(e)}, status=502)

        self.logger.info(f"Dispatched job {response.job_id}")
        return web.json_response(response.to_wire(), status=202)

    async def handle_status(self, request: web.Request) -> web.Response:
        job_id = JobId(request.match_info["job_id"])
        try:
            response = await self.service.get_status(job_id)
        except JobNotFoundError as e:
            return web.json_response({"error": str(e)}, status=404)

        self.logger.debug(f"Job {job_id} status: {response.status.value}")
        return web.json_response(response.to_wire())

    async def _close_platform(self, app: web.Application) -> None:
        await self.service.platform.close()

    async def start(self, port: int = 8080):
        runner = web.AppRunner(self.app)
        await runner.setup()
        self._runner = runner
        site = web.TCPSite(runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        """Stop serving and cancel any jobs still running"""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self.logger.info("Server stopped")
