from sqlmodel import SQLModel, create_engine
from pathlib import Path
from rcep.config import settings
from rcep.logging import logger

DATA_DIR = Path(settings.DATA_DIR)
DB_NAME = "rcep.db"
DB_URL = f"sqlite:///{DATA_DIR / DB_NAME}"

engine = create_engine(DB_URL, echo=False)

def init_db():
    if not DATA_DIR.exists():
        DATA_DIR.mkdir(exist_ok=True)

    # Import all models here so SQLModel knows about them
    from rcep.models import capture, device  # noqa: F401

    logger.info(f"Initializing database at {DB_URL}")
    SQLModel.metadata.create_all(engine)
