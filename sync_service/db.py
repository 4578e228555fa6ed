import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

DB_URL= os.getenv("DATABASE_URL", "sqlite:///./quickcart.db")

# sqlite connections are shared between the consumer task and FastAPI's threadpool
connect_args= {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
engine= create_engine(DB_URL, pool_pre_ping=True, connect_args=connect_args)
SessionLocal= sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base= declarative_base()

def init_db(bind=None):
    """Create the users, orders and failed_runs tables if they do not exist yet."""
    Base.metadata.create_all(bind=bind or engine)

class ToDictMixIn:
    def to_dict(self):
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}
