from sqlmodel import SQLModel

import mir_database.models  # noqa: F401  registers every table on SQLModel.metadata

Base = SQLModel

__all__ = [
    "Base",
    "SQLModel",
]
