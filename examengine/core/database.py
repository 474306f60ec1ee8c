from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from examengine.core.config import DATABASE_URL

# sqlite is used for local runs; its connections must be shareable across request threads
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
