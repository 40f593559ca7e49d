"""Content-addressed image naming for mysqlindocker."""

import hashlib
import secrets
from dataclasses import dataclass
from pathlib import Path

from mysqlindocker.errors import ConfigurationError
from mysqlindocker.errors_catalog import actionable_error

IMAGE_PREFIX = "mysql-in-docker-"
RECIPES_DIR = Path(__file__).resolve().parent.parent / "docker"
RECIPE_FILES = {False: "Dockerfile5", True: "Dockerfile8"}


def recipe_path(mysql8: bool) -> Path:
    return RECIPES_DIR / RECIPE_FILES[bool(mysql8)]


@dataclass(frozen=True)
class ImageIdentity:
    """Image tag derived from the full byte content of a Dockerfile.

    Two identities built from identical recipe bytes share a tag, so the
    image built by the first run is reused by every later one. Any edit to
    the recipe yields a new tag and forces a rebuild.
    """

    recipe: Path
    digest: str

    @classmethod
    def from_recipe(cls, recipe: Path) -> "ImageIdentity":
        try:
            content = Path(recipe).read_bytes()
        except OSError as exc:
            raise ConfigurationError(
                actionable_error("recipe_unreadable", path=str(recipe), reason=str(exc))
            ) from exc
        return cls(recipe=Path(recipe), digest=hashlib.sha256(content).hexdigest()[:32])

    @property
    def tag(self) -> str:
        return f"{IMAGE_PREFIX}{self.digest}"

    @property
    def context_dir(self) -> Path:
        return self.recipe.parent

    def container_name(self) -> str:
        return f"{self.tag}-{secrets.token_hex(8)}"
