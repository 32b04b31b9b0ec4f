import os
import sys
import logging
import logging.handlers
import threading
from pathlib import Path

# Ensure `src/` is on sys.path so we can import our package during development
sys.path.insert(0, str(Path(__file__).resolve().parent.joinpath("src")))

from fastapi import FastAPI, HTTPException
from datetime import datetime, timezone

from nodekeeper_agent import __version__
from nodekeeper_agent.agent import Agent
from nodekeeper_agent.config import AgentConfig
from nodekeeper_agent.config_repo import ConfigRepo
from nodekeeper_agent.errors import NodekeeperError, NotFoundError
from nodekeeper_agent.locker import Holder
from nodekeeper_agent.models import ANNOTATION_LAST_UPGRADE, format_timestamp, label_match
from nodekeeper_agent.state_store import NodeStore
from nodekeeper_agent.system import detect_system


# Configure logging
def setup_logging():
    """Configure colored console and file logging."""

    log_dir = Path(os.environ.get("NODEKEEPER_ROOT_PATH", ".")) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_formatter = _ColoredFormatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File handler (rotating to prevent huge logs)
    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / "nodekeeper-agent.log",
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    file_handler.setFormatter(file_formatter)
    logger.addHandler(file_handler)

    # GitPython is chatty at DEBUG
    logging.getLogger("git").setLevel(logging.INFO)

    return logger


class _ColoredFormatter(logging.Formatter):
    """Custom formatter with ANSI color codes."""

    COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
    }
    RESET = "\033[0m"

    def format(self, record):
        # Copy so the file handler still sees the plain level name
        record = logging.makeLogRecord(record.__dict__)
        log_color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{log_color}{record.levelname}{self.RESET}"
        return super().format(record)


# Setup logging before creating the app
logger = setup_logging()
logger.info("Nodekeeper Agent server starting...")

app = FastAPI(title="Nodekeeper Agent API", version=__version__)


@app.on_event("startup")
def _start_agent():
    """Build the agent from NODEKEEPER_* settings and start its loop."""
    try:
        config = AgentConfig.from_env()
        logger.info(f"Agent namespace {config.namespace}, store {config.store_path}, repo {config.config_repo_path}")

        store = NodeStore(path=str(config.store_path))
        repo = ConfigRepo(path=str(config.config_repo_path))
        system = detect_system(file_owner=config.file_owner, file_group=config.file_group)

        agent = Agent(config, store, repo, system)
        app.state.agent = agent

        thread = threading.Thread(target=agent.run_forever, name="nodekeeper-agent", daemon=True)
        thread.start()
        app.state.agent_thread = thread
        logger.info(f"Agent started for node {agent.namespace}/{agent.name}")
    except Exception as e:
        logger.error(f"Failed to start agent: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
def _stop_agent():
    agent = getattr(app.state, "agent", None)
    if agent is None:
        return
    logger.info("Stopping agent loop")
    agent.stop()
    thread = getattr(app.state, "agent_thread", None)
    if thread is not None:
        thread.join(timeout=10)


def _agent() -> Agent:
    agent = getattr(app.state, "agent", None)
    if agent is None:
        raise HTTPException(status_code=503, detail="Agent not initialized")
    return agent


@app.get("/health")
async def health():
    logger.debug("Health check requested")
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# Node Endpoints

@app.get("/api/node")
def get_node():
    """Get this host's node record (labels, annotations, upgrade, status)."""
    agent = _agent()
    try:
        node = agent.store.get(agent.namespace, agent.name)
    except NotFoundError as e:
        logger.warning(f"Node record not found: {agent.namespace}/{agent.name}")
        raise HTTPException(status_code=404, detail=str(e))
    except NodekeeperError as e:
        logger.error(f"Failed to fetch node record: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    return {"ok": True, "version": node.version, "node": node.to_dict()}


@app.get("/api/lock")
def get_lock():
    """Get this host's upgrade lock state.

    Returns whether the node holds its group's lock, since when, and the
    time of its last completed upgrade.
    """
    agent = _agent()
    holder = Holder(agent.namespace, agent.name)
    try:
        since = agent.locker.locked_since(holder)
        node = agent.store.get(agent.namespace, agent.name)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NodekeeperError as e:
        logger.error(f"Failed to fetch lock state: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "ok": True,
        "locked": since is not None,
        "locked_since": format_timestamp(since) if since else None,
        "last_upgrade": node.annotations.get(ANNOTATION_LAST_UPGRADE),
        "group": node.upgrade.group,
    }


# Desired State Endpoints

@app.get("/api/configsets")
@app.get("/api/configsets/")
def get_configsets():
    """List ConfigSets in the agent's namespace and whether each selects this node."""
    agent = _agent()
    try:
        node = agent.store.get(agent.namespace, agent.name)
        configsets = agent.repo.configsets(agent.namespace)
    except NotFoundError as e:
        logger.warning(f"Node record not found: {agent.namespace}/{agent.name}")
        raise HTTPException(status_code=404, detail=str(e))
    except NodekeeperError as e:
        logger.error(f"Failed to list configsets: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))

    logger.info(f"Found {len(configsets)} configsets at revision {agent.repo.revision()}")
    return {
        "ok": True,
        "revision": agent.repo.revision(),
        "configsets": [
            {
                "name": cs.name,
                "labels": cs.labels,
                "matches": label_match(node.labels, cs.labels),
            }
            for cs in configsets
        ],
    }


@app.post("/api/reconcile")
def reconcile():
    """Run one agent pass now and return its summary."""
    agent = _agent()
    logger.info("Reconcile requested via API")
    result = agent.run_once()
    return {"ok": result.error is None, **result.to_dict()}


if __name__ == "__main__":
    import uvicorn

    logger.info("Starting Nodekeeper Agent server on 0.0.0.0:2371")
    uvicorn.run(app, host="0.0.0.0", port=2371, log_config=None)
