import asyncio
from contextlib import asynccontextmanager
import logging
import os

from fastapi import Depends, FastAPI, Query, Request

from .client import EventBus
from .db import SessionLocal, init_db
from .functions import register_functions
from .kafka_consumer import EventDispatcher
from .models import FailedRun
from .schemas import FailedRunOut, FunctionOut

LOG_PATH= os.getenv('LOG_PATH', '/var/log/app')
os.makedirs(LOG_PATH, exist_ok=True)
logging.basicConfig(
    filename=f'{LOG_PATH}/sync_service.log',
    level=logging.INFO,
    filemode='a',
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger= logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db(app.state.session_factory.kw.get("bind"))
    dispatcher= EventDispatcher(app.state.bus, app.state.session_factory)
    app.consumer_task= asyncio.create_task(dispatcher.run())
    yield
    app.consumer_task.cancel()
    await asyncio.gather(app.consumer_task, return_exceptions=True)
    await app.state.bus.close()


def create_app(bus: EventBus = None, session_factory=None) -> FastAPI:
    """Build the service around an event bus with the sync functions registered on it.
    """
    if bus is None:
        bus= EventBus()
        register_functions(bus)
    app= FastAPI(lifespan=lifespan, title="QuickCart sync service")
    app.state.bus= bus
    app.state.session_factory= session_factory or SessionLocal

    def get_db(request: Request):
        db= request.app.state.session_factory()
        try:
            yield db
        finally:
            db.close()

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/api/functions", response_model=list[FunctionOut])
    def list_functions(request: Request):
        return [function.describe() for function in request.app.state.bus.functions]

    @app.get("/api/runs/failed", response_model=list[FailedRunOut])
    def list_failed_runs(limit: int = Query(50, ge=1, le=500), db=Depends(get_db)):
        return db.query(FailedRun).order_by(FailedRun.id.desc()).limit(limit).all()

    return app


app= create_app()
