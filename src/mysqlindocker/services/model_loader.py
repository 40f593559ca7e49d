"""SQLAlchemy model discovery and schema sync for mysqlindocker.

A model source is a Python file exposing ``define(Base)``, which declares one
mapped class on the given declarative base and returns it. Sources are given
either as files or as directories, scanned non-recursively::

    from sqlalchemy import Column, Integer, String

    def define(Base):
        class User(Base):
            __tablename__ = "users"
            id = Column(Integer, primary_key=True, autoincrement=True)
            name = Column(String(255))

        return User

Models are registered under ``__model_name__`` when set, else the class name.
A model may provide ``associate(lookup)``; it is called once every source has
been loaded, and ``lookup.get_model_by_name(name)`` returns a sibling model.
"""

import hashlib
import importlib.util
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, declarative_base

from mysqlindocker.errors import ConfigurationError


class ModelLookup:
    """Handed to ``associate`` hooks so models can find their siblings."""

    def __init__(self, models: Dict[str, type]):
        self._models = models

    def get_model_by_name(self, name: str) -> Optional[type]:
        return self._models.get(name)


class ModelRegistry(Mapping):
    """Read-only name to model mapping bound to one async engine."""

    def __init__(self, models: Dict[str, type], base, engine=None):
        self._models = dict(models)
        self.base = base
        self.engine = engine
        self._session_factory = (
            async_sessionmaker(engine, expire_on_commit=False) if engine is not None else None
        )

    def __getitem__(self, name: str) -> type:
        return self._models[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    @property
    def metadata(self):
        return self.base.metadata

    def session(self):
        if self._session_factory is None:
            raise ConfigurationError("Model registry is not bound to a database engine.")
        return self._session_factory()

    async def close(self):
        if self.engine is not None:
            await self.engine.dispose()


class ModelLoader:
    """Imports model sources and creates their tables."""

    EXTENSION = ".py"
    DRIVER = "mysql+aiomysql"
    POOL_TIMEOUT = 300

    def __init__(self, logger, legacy_orm: bool = False, verbose: bool = False):
        self.logger = logger
        self.legacy_orm = legacy_orm
        self.verbose = verbose

    def make_base(self):
        if self.legacy_orm:
            return declarative_base()

        class Base(DeclarativeBase):
            pass

        return Base

    def iter_source_files(self, sources: Iterable[str]) -> List[Path]:
        files: List[Path] = []
        for source in sources:
            path = Path(source)
            if path.is_file() and path.suffix == self.EXTENSION:
                files.append(path)
            elif path.is_dir():
                files.extend(
                    sorted(
                        child
                        for child in path.iterdir()
                        if child.is_file()
                        and child.suffix == self.EXTENSION
                        and not child.name.startswith("_")
                    )
                )
            else:
                raise ConfigurationError(f"Model source not found: {source}")
        return files

    def import_definition(self, path: Path, base) -> type:
        # Unique per path so that two "model.py" files in different
        # directories never shadow each other in sys.modules.
        digest = hashlib.sha256(str(path.resolve()).encode("utf-8")).hexdigest()[:16]
        spec = importlib.util.spec_from_file_location(f"mysqlindocker_model_{digest}", path)
        if spec is None or spec.loader is None:
            raise ConfigurationError(f"Cannot import model source: {path}")

        module = importlib.util.module_from_spec(spec)
        # SQLAlchemy resolves string annotations through sys.modules.
        sys.modules[spec.name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            sys.modules.pop(spec.name, None)
            raise ConfigurationError(f"Failed to import model source {path}: {exc}") from exc

        define = getattr(module, "define", None)
        if not callable(define):
            raise ConfigurationError(f"{path} does not expose a define(Base) function.")
        return define(base)

    def discover(self, sources: Iterable[str], base) -> Dict[str, type]:
        models: Dict[str, type] = {}
        for path in self.iter_source_files(sources):
            model = self.import_definition(path, base)
            name = getattr(model, "__model_name__", None) or model.__name__
            self.logger.debug("Loaded model %s from %s", name, path)
            models[name] = model

        lookup = ModelLookup(models)
        for model in models.values():
            associate = getattr(model, "associate", None)
            if callable(associate):
                associate(lookup)
        return models

    def build_url(self, host: str, port: int, user: str, password: str, database: str) -> URL:
        return URL.create(
            self.DRIVER,
            username=user,
            password=password,
            host=host,
            port=port,
            database=database,
            query={"charset": "utf8mb4"},
        )

    async def load(
        self,
        sources: Iterable[str],
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        pool_size: int = 10,
    ) -> ModelRegistry:
        base = self.make_base()
        models = self.discover(sources, base)

        engine = create_async_engine(
            self.build_url(host, port, user, password, database),
            pool_size=pool_size,
            max_overflow=0,
            pool_timeout=self.POOL_TIMEOUT,
            echo=self.verbose,
        )
        try:
            async with engine.begin() as conn:
                await conn.run_sync(base.metadata.create_all)
        except Exception:
            await engine.dispose()
            raise

        self.logger.debug("Synchronized %s model(s)", len(models))
        return ModelRegistry(models, base, engine)
