"""
Project directory and content-based project detection.

Projects form a client -> parent -> child hierarchy. Phase taxonomies are
defined on parent projects; children inherit them. Lookups are served
from an explicit TTL cache object owned by the directory.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

from .errors import StoreError
from .protocol import StoreProtocol
from .types import CLIENTS_TABLE, PROJECT_PATHS_TABLE, PROJECTS_TABLE

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CACHE_TTL = 300.0  # 5 minutes


@dataclass
class TTLCache(Generic[T]):
    """
    A loaded value with an expiry on the monotonic clock.

    ``get()`` reloads once the value has expired. A failed reload keeps
    serving the previous value (or ``empty`` if nothing was ever loaded).
    """
    loader: Callable[[], T]
    ttl: float
    empty: Callable[[], T]
    clock: Callable[[], float] = time.monotonic
    data: Optional[T] = None
    expires_at: float = 0.0

    def get(self) -> T:
        if self.data is None or self.clock() >= self.expires_at:
            self.refresh()
        return self.data if self.data is not None else self.empty()

    def refresh(self) -> T:
        try:
            self.data = self.loader()
            self.expires_at = self.clock() + self.ttl
        except StoreError as e:
            logger.error("Cache refresh failed: %s", e)
            if self.data is None:
                return self.empty()
        return self.data

    def invalidate(self) -> None:
        self.expires_at = 0.0


@dataclass
class ProjectInfo:
    """A project with its client, hierarchy position and search keywords."""
    id: str
    name: str
    slug: str = ""
    is_parent: bool = False
    parent_id: Optional[str] = None
    parent_name: Optional[str] = None
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    paths: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)


def build_keywords(name: str, slug: str, paths: list[str]) -> list[str]:
    """Search keywords from a project's name, slug and folder names."""
    keywords: list[str] = []
    if name:
        keywords.append(name.lower())
        keywords.extend(p for p in re.split(r"[\s\-_]+", name.lower()) if p)
    if slug:
        keywords.append(slug.lower())
        keywords.extend(p for p in re.split(r"[\-_]+", slug.lower()) if p)
    for path in paths:
        parts = [p for p in path.split("/") if p and p not in ("var", "www")]
        keywords.extend(p.lower() for p in parts)
    return list(dict.fromkeys(keywords))


class ProjectDirectory:
    """Cached view of the projects, project paths and clients tables."""

    def __init__(self, store: StoreProtocol, *, ttl: float = DEFAULT_CACHE_TTL,
                 clock: Callable[[], float] = time.monotonic):
        self._store = store
        self.cache: TTLCache[dict[str, ProjectInfo]] = TTLCache(
            loader=self._load, ttl=ttl, empty=dict, clock=clock,
        )

    def _load(self) -> dict[str, ProjectInfo]:
        projects = self._store.select(PROJECTS_TABLE, order="name")
        paths = self._store.select(PROJECT_PATHS_TABLE, columns=["project_id", "path"])
        clients = {c["id"]: c for c in self._store.select(CLIENTS_TABLE)}

        path_map: dict[str, list[str]] = {}
        for row in paths:
            path_map.setdefault(row["project_id"], []).append(row["path"])
        names = {p["id"]: p.get("name") for p in projects}

        directory: dict[str, ProjectInfo] = {}
        for project in projects:
            project_paths = path_map.get(project["id"], [])
            client = clients.get(project.get("client_id")) or {}
            directory[project["id"]] = ProjectInfo(
                id=project["id"],
                name=project.get("name") or "",
                slug=project.get("slug") or "",
                is_parent=bool(project.get("is_parent")),
                parent_id=project.get("parent_id"),
                parent_name=names.get(project.get("parent_id")),
                client_id=project.get("client_id"),
                client_name=client.get("name"),
                paths=project_paths,
                keywords=build_keywords(
                    project.get("name") or "", project.get("slug") or "", project_paths,
                ),
            )
        logger.info("Projects loaded: %d projects, %d clients", len(directory), len(clients))
        return directory

    def projects(self) -> dict[str, ProjectInfo]:
        return self.cache.get()

    def refresh(self) -> dict[str, ProjectInfo]:
        return self.cache.refresh()

    def get_project(self, project_id: str) -> Optional[ProjectInfo]:
        return self.projects().get(project_id)

    def children_of(self, parent_id: str) -> list[ProjectInfo]:
        return [p for p in self.projects().values() if p.parent_id == parent_id]

    def for_client(self, client_id: str) -> list[ProjectInfo]:
        return [p for p in self.projects().values() if p.client_id == client_id]


def list_project_ids(store: StoreProtocol) -> list[str]:
    """Ids of every known project."""
    return [row["id"] for row in store.select(PROJECTS_TABLE, columns=["id"])]


def get_parent_id(store: StoreProtocol, project_id: str) -> Optional[str]:
    """
    The project that owns the phase taxonomy for ``project_id``.

    Parent projects return themselves; children return their parent.
    Returns None for unknown projects or when the lookup fails.
    """
    try:
        row = store.get(PROJECTS_TABLE, project_id)
    except StoreError as e:
        logger.warning("Parent lookup failed for %s: %s", project_id, e)
        return None
    if not row:
        return None
    if row.get("is_parent"):
        return project_id
    return row.get("parent_id")


# -----------------------------------------------------------------------------
# Content-based detection
# -----------------------------------------------------------------------------

@dataclass
class DetectedProject:
    """Result of content-based project detection."""
    project: Optional[ProjectInfo]
    confidence: float
    reason: str

    @property
    def project_id(self) -> Optional[str]:
        return self.project.id if self.project else None

    @property
    def client_id(self) -> Optional[str]:
        return self.project.client_id if self.project else None


class ProjectDetector:
    """
    Score text against the project directory to find the project it is about.

    Signals: exact path (+10), folder name (+3), project name (+4),
    client name (+2), keyword (+1 each). Confidence is score / 15, capped
    at 1; detections under MIN_CONFIDENCE fall back to the caller's default.
    """

    EXACT_PATH = 10
    FOLDER = 3
    NAME = 4
    CLIENT = 2
    KEYWORD = 1
    FULL_CONFIDENCE_SCORE = 15
    MIN_CONFIDENCE = 0.2

    def __init__(self, directory: ProjectDirectory):
        self._directory = directory

    def score(self, content: str, project: ProjectInfo) -> tuple[float, list[str]]:
        lowered = content.lower()
        score = 0
        matches: list[str] = []
        for path in project.paths:
            if path in content:
                score += self.EXACT_PATH
                matches.append(f"exact path: {path}")
            folder = path.rstrip("/").split("/")[-1]
            if folder and folder in content:
                score += self.FOLDER
                matches.append(f"folder: {folder}")
        for keyword in project.keywords:
            if len(keyword) > 2 and keyword in lowered:
                score += self.KEYWORD
                matches.append(f"keyword: {keyword}")
        if project.name and project.name.lower() in lowered:
            score += self.NAME
            matches.append(f"name: {project.name}")
        if project.client_name and project.client_name.lower() in lowered:
            score += self.CLIENT
            matches.append(f"client: {project.client_name}")
        return score, matches

    def detect(self, content: str, fallback: Optional[str] = None) -> DetectedProject:
        """Detect which project content belongs to."""
        fallback_project = self._directory.get_project(fallback) if fallback else None
        if not content:
            return DetectedProject(fallback_project, 0.0, "no content")

        best: Optional[ProjectInfo] = None
        best_score = 0
        best_matches: list[str] = []
        for project in self._directory.projects().values():
            score, matches = self.score(content, project)
            if score > best_score:
                best, best_score, best_matches = project, score, matches

        confidence = min(best_score / self.FULL_CONFIDENCE_SCORE, 1.0)
        if best is None or confidence < self.MIN_CONFIDENCE:
            logger.debug("Low confidence detection (%.2f), using fallback", confidence)
            return DetectedProject(fallback_project, 0.1 if best else 0.0,
                                   "low confidence, using fallback")

        logger.info("Project detected: %s (%.2f) %s", best.name, confidence, best_matches[:5])
        return DetectedProject(best, confidence, ", ".join(best_matches[:5]))

    def detect_all(self, content: str, min_score: int = 2) -> list[dict[str, Any]]:
        """All projects mentioned in content, strongest first."""
        if not content:
            return []
        found = []
        for project in self._directory.projects().values():
            score, matches = self.score(content, project)
            if score >= min_score:
                found.append({
                    "project_id": project.id,
                    "name": project.name,
                    "client": project.client_name,
                    "is_parent": project.is_parent,
                    "score": score,
                    "matches": matches,
                })
        return sorted(found, key=lambda d: d["score"], reverse=True)
