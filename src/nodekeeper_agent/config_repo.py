from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging
import os

from git import InvalidGitRepositoryError, NoSuchPathError, Repo

from .errors import NotFoundError, UnrecognizedValueError
from .json_utils import atomic_write_json, read_json
from .models import ConfigMap, ConfigSet, Secret

logger = logging.getLogger(__name__)


class ConfigRepo:
    """Desired state for the fleet, kept as JSON documents in a git repo.

    Layout (relative to the repo root):
    - <namespace>/configsets/<name>.json
    - <namespace>/secrets/<name>.json
    - <namespace>/configmaps/<name>.json

    Key invariant: documents are re-read from the working tree on every
    call. Nothing is cached between passes, so an edit pulled into the
    checkout applies on the next pass.
    """

    KINDS = ("configsets", "secrets", "configmaps")

    def __init__(self, path: Optional[str] = None):
        """Open the repo at `path`, initializing it if missing.

        Args:
            path: Path to repo root (default: ./data/desired)
        """
        self.path = Path(path or "data/desired").resolve()
        logger.info(f"Initializing ConfigRepo at {self.path}")
        self.repo = self._init_repo()

    def _init_repo(self) -> Repo:
        try:
            repo = Repo(self.path)
            logger.debug(f"Found existing repo at {self.path}")
            return repo
        except (InvalidGitRepositoryError, NoSuchPathError):
            pass

        self.path.mkdir(parents=True, exist_ok=True)
        repo = Repo.init(self.path)
        (self.path / ".gitignore").write_text("*.tmp\n")
        repo.index.add([".gitignore"])
        repo.index.commit("Initialize desired state repo")
        logger.info(f"Initialized new desired state repo at {self.path}")
        return repo

    def _document_path(self, namespace: str, kind: str, name: str) -> Path:
        if kind not in self.KINDS:
            raise ValueError(f"Unknown kind: {kind}")
        return self.path / namespace / kind / f"{name}.json"

    def _put(self, namespace: str, kind: str, name: str, document: Dict[str, Any]) -> str:
        """Write a document and commit it. Returns the short commit SHA."""
        path = self._document_path(namespace, kind, name)
        atomic_write_json(path, document)

        rel_path = os.path.relpath(str(path), str(self.path))
        self.repo.index.add([rel_path])
        if not self.repo.index.diff("HEAD"):
            logger.debug(f"{rel_path} unchanged, nothing to commit")
            return self.revision()

        commit = self.repo.index.commit(f"Update {kind[:-1]} {namespace}/{name}")
        logger.info(f"Committed {rel_path} as {commit.hexsha[:10]}")
        return commit.hexsha[:10]

    def _get(self, namespace: str, kind: str, name: str) -> Dict[str, Any]:
        path = self._document_path(namespace, kind, name)
        if not path.exists():
            raise NotFoundError(f"{kind[:-1]} {namespace}/{name} not found")
        try:
            return read_json(path)
        except json.JSONDecodeError as e:
            raise UnrecognizedValueError(f"{kind[:-1]} {namespace}/{name} is not valid JSON: {e}") from e

    def put_configset(self, configset: ConfigSet) -> str:
        return self._put(configset.namespace, "configsets", configset.name, configset.to_dict())

    def put_secret(self, secret: Secret) -> str:
        return self._put(
            secret.namespace, "secrets", secret.name,
            {"name": secret.name, "namespace": secret.namespace, "data": secret.data},
        )

    def put_configmap(self, configmap: ConfigMap) -> str:
        return self._put(
            configmap.namespace, "configmaps", configmap.name,
            {"name": configmap.name, "namespace": configmap.namespace, "data": configmap.data},
        )

    def configset_names(self, namespace: str) -> List[str]:
        """Names of the ConfigSet documents in a namespace, sorted."""
        directory = self.path / namespace / "configsets"
        if not directory.is_dir():
            return []
        return sorted(path.stem for path in directory.glob("*.json"))

    def get_configset(self, namespace: str, name: str) -> ConfigSet:
        """Load one ConfigSet.

        Raises:
            NotFoundError if the document is missing
            UnrecognizedValueError if it is not valid JSON or not a ConfigSet
        """
        document = self._get(namespace, "configsets", name)
        if not isinstance(document, dict):
            raise UnrecognizedValueError(f"configset {namespace}/{name} is not a JSON object")
        document.setdefault("name", name)
        document.setdefault("namespace", namespace)
        return ConfigSet.from_dict(document)

    def configsets(self, namespace: str) -> List[ConfigSet]:
        """All loadable ConfigSets in a namespace, ordered by name.

        A broken document is logged and left out; the others still load.
        """
        configsets = []
        for name in self.configset_names(namespace):
            try:
                configsets.append(self.get_configset(namespace, name))
            except UnrecognizedValueError as e:
                logger.error(f"Skipping configset {namespace}/{name}: {e}")
        return configsets

    def get_secret(self, namespace: str, name: str) -> Secret:
        document = self._get(namespace, "secrets", name)
        return Secret(name=name, namespace=namespace, data=dict(document.get("data") or {}))

    def get_configmap(self, namespace: str, name: str) -> ConfigMap:
        document = self._get(namespace, "configmaps", name)
        return ConfigMap(name=name, namespace=namespace, data=dict(document.get("data") or {}))

    def revision(self) -> str:
        """Short SHA of HEAD."""
        return self.repo.head.commit.hexsha[:10]
