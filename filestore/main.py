import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from filestore.api.routes import router
from filestore.config import CORS_ORIGINS, LOG_LEVEL, URL_STORAGE_PATH
from filestore.core.exceptions import register_exception_handlers
from filestore.db import init_db
from filestore.models import StorageMode
from filestore.services.file_service import default_backends

app = FastAPI(title="File Store API", version="1.0.0")

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("filestore")

origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_db()

app.state.storage_backends = default_backends()
local_backend = app.state.storage_backends[StorageMode.LOCAL]
logger.info("Serving local files from %s at %s", local_backend.root, URL_STORAGE_PATH)
app.mount(URL_STORAGE_PATH, StaticFiles(directory=local_backend.root), name="upload")

app.include_router(router)
register_exception_handlers(app)
