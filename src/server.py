import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from errors import ConfigurationError, PersistenceError, ValidationError
from evidence import ScreenshotStore
from orchestrator import ExecutionRequest, TestRunOrchestrator, prepare_run
from progress_stream import ProgressStream
from run_store import RunStore
from session_manager import SessionManager
from settings import Settings

logger = logging.getLogger(__name__)

# Runs outlive the request that started them; keep a reference until they finish.
_background_runs: set[asyncio.Task] = set()


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.http_client = httpx.AsyncClient(timeout=30.0)
    yield
    await app.state.http_client.aclose()


app = FastAPI(title="Test Execution Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-requested-with"],
)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(str(exc))
    return JSONResponse(status_code=500, content={"error": "Server configuration error"})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    return JSONResponse(status_code=500, content={"error": str(exc)})


# Dependencies, overridable in tests.

@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_store(settings: Settings = Depends(get_settings), client: httpx.AsyncClient = Depends(get_http_client)):
    return RunStore(settings, client)


def get_orchestrator(
    settings: Settings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
    store=Depends(get_store),
) -> TestRunOrchestrator:
    return TestRunOrchestrator(
        session_manager=SessionManager(settings, client),
        store=store,
        screenshot_store=ScreenshotStore.from_settings(settings),
        case_delay=settings.case_delay_seconds,
    )


def bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization") or ""
    if not header.startswith("Bearer ") or not header[len("Bearer "):].strip():
        raise ValidationError("Missing or invalid Authorization header", status_code=401)
    return header[len("Bearer "):].strip()


@app.get("/status")
async def status():
    return {"status": "ok"}


@app.post("/execute")
async def execute(
    request: Request,
    settings: Settings = Depends(get_settings),
    store=Depends(get_store),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    settings.require_server_config()
    token = bearer_token(request)
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    execution = ExecutionRequest.from_body(body)

    user_id = await store.get_user_id(token)
    prepared = await prepare_run(store, execution, settings.local_environment_url, user_id)

    stream = ProgressStream()

    async def drive():
        try:
            await orchestrator.run(prepared, stream.emit)
        except Exception as e:
            logger.error(f"Test run {prepared.run.id} crashed: {e}")
        finally:
            stream.close()

    task = asyncio.create_task(drive())
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)

    return StreamingResponse(
        stream.frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


def main():
    settings = get_settings()
    setup_logging(settings.log_level)
    logger.info(f"Starting test execution service on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
