from .base import Base
from .repositories import Repository
from .session import create_engine, create_session_factory, create_tables

__all__ = ["Base", "Repository", "create_engine", "create_session_factory", "create_tables"]
