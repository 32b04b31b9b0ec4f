from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional
import json
import logging
import sqlite3

from .errors import ConflictError, NotFoundError
from .json_utils import json_dumps
from .models import ManagedNode, label_match

logger = logging.getLogger(__name__)


class NodeStore:
    """Shared, versioned store of ManagedNode records.

    Uses:
    - SQLite: one row per (namespace, name) holding the JSON document
      and an integer version
    - Conditional updates: a write only lands if the version it read is
      still current, otherwise ConflictError

    Key invariant: the version column is the only concurrency token. Every
    agent in the fleet may read every record, but each writes only its own,
    and never blindly: lost races always surface as ConflictError.

    Each call opens its own connection, so one store file can be shared by
    threads and by processes on the same filesystem.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS nodes (
            namespace TEXT NOT NULL,
            name TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 1,
            document TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (namespace, name)
        );
    """

    def __init__(self, path: Optional[str] = None, timeout: float = 30.0):
        """Initialize NodeStore.

        Args:
            path: Path to the SQLite file (default: ./data/nodes.db)
            timeout: Seconds to wait on a locked database file
        """
        self.path = Path(path or "data/nodes.db").resolve()
        self.timeout = timeout

        logger.info(f"Initializing NodeStore at {self.path}")
        self._init_db()

    def _init_db(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as db:
            for statement in self.SCHEMA.split(";"):
                if statement.strip():
                    db.execute(statement)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        db = sqlite3.connect(str(self.path), timeout=self.timeout)
        db.row_factory = sqlite3.Row
        try:
            with db:
                yield db
        finally:
            db.close()

    @staticmethod
    def _to_node(row: sqlite3.Row) -> ManagedNode:
        return ManagedNode.from_dict(json.loads(row["document"]), version=row["version"])

    def get(self, namespace: str, name: str) -> ManagedNode:
        """Get a node record. Raises NotFoundError."""
        with self._connect() as db:
            row = db.execute(
                "SELECT version, document FROM nodes WHERE namespace = ? AND name = ?",
                (namespace, name),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"node {namespace}/{name} not found")
        return self._to_node(row)

    def list(self, namespace: str, labels: Optional[Dict[str, str]] = None) -> List[ManagedNode]:
        """List node records in a namespace matching every given label."""
        with self._connect() as db:
            rows = db.execute(
                "SELECT version, document FROM nodes WHERE namespace = ? ORDER BY name",
                (namespace,),
            ).fetchall()
        nodes = [self._to_node(row) for row in rows]
        if labels:
            nodes = [n for n in nodes if label_match(n.labels, labels)]
        return nodes

    def create(self, node: ManagedNode) -> ManagedNode:
        """Create a record. Raises ConflictError if it already exists."""
        try:
            with self._connect() as db:
                db.execute(
                    "INSERT INTO nodes (namespace, name, version, document) VALUES (?, ?, 1, ?)",
                    (node.namespace, node.name, json_dumps(node.to_dict())),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"node {node.namespace}/{node.name} already exists") from e

        logger.info(f"Created node record {node.namespace}/{node.name}")
        node.version = 1
        return node

    def update(self, node: ManagedNode) -> ManagedNode:
        """Write a record if it has not changed since it was read.

        Raises ConflictError if another writer got there first, and
        NotFoundError if the record is gone.
        """
        with self._connect() as db:
            cursor = db.execute(
                "UPDATE nodes SET document = ?, version = version + 1, updated_at = CURRENT_TIMESTAMP "
                "WHERE namespace = ? AND name = ? AND version = ?",
                (json_dumps(node.to_dict()), node.namespace, node.name, node.version),
            )
            if cursor.rowcount == 0:
                exists = db.execute(
                    "SELECT 1 FROM nodes WHERE namespace = ? AND name = ?",
                    (node.namespace, node.name),
                ).fetchone()
                if exists is None:
                    raise NotFoundError(f"node {node.namespace}/{node.name} not found")
                raise ConflictError(
                    f"node {node.namespace}/{node.name} changed since version {node.version}"
                )

        node.version += 1
        return node

    def update_with_retry(
        self,
        namespace: str,
        name: str,
        mutate: Callable[[ManagedNode], None],
        attempts: int = 5,
    ) -> ManagedNode:
        """Re-read, mutate and conditionally write until the write lands.

        Only ConflictError is retried; the last one is re-raised after
        `attempts` tries.
        """
        for attempt in range(1, attempts + 1):
            node = self.get(namespace, name)
            mutate(node)
            try:
                return self.update(node)
            except ConflictError:
                if attempt == attempts:
                    raise
                logger.debug(f"Conflict updating {namespace}/{name}, retrying ({attempt}/{attempts})")
        raise AssertionError("unreachable")

    def get_or_create(self, namespace: str, name: str) -> ManagedNode:
        """Get a node record, creating an empty one on first sight."""
        try:
            return self.get(namespace, name)
        except NotFoundError:
            pass
        try:
            return self.create(ManagedNode(name=name, namespace=namespace))
        except ConflictError:
            # Created concurrently
            return self.get(namespace, name)
