from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base

from config import get_settings


def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


engine = make_engine(get_settings().database_url)
Base = declarative_base()
