"""Project context: repository root, metadata and ledger location."""

import secrets
from dataclasses import dataclass
from pathlib import Path

import pygit2
import structlog
import yaml

from issuebranch.backends.git import GitObjectStore
from issuebranch.config import PROJECT_DIR, Config, Settings, resolve_settings
from issuebranch.errors import NotInGitRepoError, NotInitializedError
from issuebranch.ledger import ClaimLedger
from issuebranch.reconcile import BranchReconciler

logger = structlog.get_logger()

METADATA_FILE = "metadata.yaml"


@dataclass
class Metadata:
    """Project metadata stored in .issuebranch/metadata.yaml."""

    project_id: str

    @classmethod
    def new(cls, repo_root: Path) -> "Metadata":
        """Metadata with a fresh project ID derived from the repository name."""
        name = repo_root.resolve().name or "project"
        return cls(project_id=f"{name}-{secrets.token_hex(4)}")

    @classmethod
    def load(cls, path: Path) -> "Metadata":
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict) or not data.get("project_id"):
            raise ValueError(f"Invalid project metadata in {path}")
        return cls(project_id=str(data["project_id"]))

    def save(self, path: Path) -> None:
        with open(path, "w") as f:
            yaml.safe_dump({"project_id": self.project_id}, f, default_flow_style=False)


class Project:
    """Everything a command needs to know about the current project."""

    def __init__(self, repo_root: Path, settings: Settings, metadata: Metadata) -> None:
        self.repo_root = repo_root
        self.settings = settings
        self.metadata = metadata
        self.store = GitObjectStore(repo_root)
        self.reconciler = BranchReconciler(self.store)

    @property
    def project_dir(self) -> Path:
        return self.repo_root / PROJECT_DIR

    @property
    def db_path(self) -> Path:
        """The ledger lives in the global home, keyed by project ID."""
        return self.settings.home / f"{self.metadata.project_id}.db"

    @staticmethod
    def find_repo_root(start: Path | str | None = None) -> Path:
        """Find the working directory root of the enclosing repository.

        Raises:
            NotInGitRepoError: If `start` is not inside a non-bare repository
        """
        start = Path(start) if start is not None else Path.cwd()
        discovered = pygit2.discover_repository(str(start))
        if discovered is None:
            raise NotInGitRepoError(start)
        workdir = pygit2.Repository(discovered).workdir
        if not workdir:
            raise NotInGitRepoError(start)
        return Path(workdir).resolve()

    @staticmethod
    def is_initialized(repo_root: Path) -> bool:
        return (repo_root / PROJECT_DIR / METADATA_FILE).exists()

    @staticmethod
    def _settings_for(repo_root: Path, settings: Settings | None) -> Settings:
        if settings is not None:
            return settings
        return resolve_settings(Config(config_dir=repo_root / PROJECT_DIR))

    @classmethod
    def discover(cls, start: Path | str | None = None, settings: Settings | None = None) -> "Project":
        """Load the project containing `start` (default: current directory).

        Raises:
            NotInGitRepoError: If there is no enclosing repository
            NotInitializedError: If the project has not been initialized
        """
        repo_root = cls.find_repo_root(start)
        if not cls.is_initialized(repo_root):
            raise NotInitializedError()
        metadata = Metadata.load(repo_root / PROJECT_DIR / METADATA_FILE)
        project = cls(repo_root, cls._settings_for(repo_root, settings), metadata)
        logger.debug("Project discovered", repo_root=str(repo_root), project_id=metadata.project_id)
        return project

    @classmethod
    def initialize(cls, start: Path | str | None = None, settings: Settings | None = None) -> tuple["Project", bool]:
        """Create the project files and ledger if they do not exist yet.

        Returns:
            The project and whether it was newly created
        """
        repo_root = cls.find_repo_root(start)
        if cls.is_initialized(repo_root):
            return cls.discover(repo_root, settings), False

        project_dir = repo_root / PROJECT_DIR
        project_dir.mkdir(parents=True, exist_ok=True)
        metadata = Metadata.new(repo_root)
        metadata.save(project_dir / METADATA_FILE)

        project = cls(repo_root, cls._settings_for(repo_root, settings), metadata)
        project.settings.home.mkdir(parents=True, exist_ok=True)
        project.open_ledger(create=True).close()
        logger.info("Project initialized", project_id=metadata.project_id, repo_root=str(repo_root))
        return project, True

    def open_ledger(self, create: bool = False) -> ClaimLedger:
        """Open this project's claim ledger."""
        if create:
            return ClaimLedger.open_or_create(self.db_path, self.store, self.settings.data_branch)
        return ClaimLedger.open(self.db_path, self.store, self.settings.data_branch)

    def current_branch(self) -> str | None:
        return self.reconciler.current_branch()
