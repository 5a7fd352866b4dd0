import sys, os, uvicorn, logging
from contextlib import asynccontextmanager
from typing import Optional, Protocol, cast

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config.settings import settings
from engines.pattern_matcher import PatternMatcher
from engines.pattern_synthesizer import PatternSynthesizer
from engines.supplier_resolver import SupplierResolver
from repositories.pattern_store import PatternStore, SqlPatternStore
from repositories.supplier_keyword_repo import SupplierKeywordTable
from services.db import default_connection_factory
from services.event_bus import get_event_bus
from services.field_extraction_service import FieldExtractionService
from services.pattern_learning_service import PatternLearningService
from services.pattern_seeder import seed_pattern_store
from api.routers import extraction

LOG_DIR = settings.log_dir or os.path.join(os.path.dirname(__file__), '..', 'logs')
os.makedirs(LOG_DIR, exist_ok=True)
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO),
                    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                    handlers=[logging.StreamHandler(), logging.FileHandler(os.path.join(LOG_DIR, "extraction.log"))])
logger = logging.getLogger(__name__)


class ExtractionAppState(Protocol):
    pattern_store: Optional[PatternStore]
    keyword_table: Optional[SupplierKeywordTable]
    extraction_service: Optional[FieldExtractionService]
    learning_service: Optional[PatternLearningService]


def build_services(state: ExtractionAppState, store: PatternStore, keyword_table: SupplierKeywordTable) -> None:
    """Wire the engine components onto ``state`` around a shared matcher."""

    resolver = SupplierResolver(keyword_table)
    matcher = PatternMatcher(store, settings)
    state.pattern_store = store
    state.keyword_table = keyword_table
    state.extraction_service = FieldExtractionService(store, resolver, matcher, settings)
    state.learning_service = PatternLearningService(
        store,
        matcher=matcher,
        resolver=resolver,
        synthesizer=PatternSynthesizer(settings),
        settings=settings,
        event_bus=get_event_bus(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("API starting up...")
    state = cast(ExtractionAppState, app.state)
    try:
        store = SqlPatternStore.from_settings(default_connection_factory(settings), settings)
        if settings.seed_on_startup:
            seed_pattern_store(store)
        build_services(state, store, SupplierKeywordTable.from_reference())
        logger.info("System initialized successfully.")
    except Exception as e:
        logger.critical("FATAL: System initialization failed: %s", e, exc_info=True)
        state.pattern_store = None
        state.keyword_table = None
        state.extraction_service = None
        state.learning_service = None
    yield
    state.extraction_service = None
    state.learning_service = None
    state.pattern_store = None
    state.keyword_table = None
    logger.info("API shutting down.")

app = FastAPI(title="Pattern Extraction API", version="1.0", lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

app.include_router(extraction.router)

@app.get("/", tags=["General"])
def read_root(): return {"message": "Pattern learning and field extraction API"}

if __name__ == "__main__":
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=True)
