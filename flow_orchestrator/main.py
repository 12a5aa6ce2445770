"""ASGI entry point: ``uvicorn flow_orchestrator.main:app``.

Configuration comes from the environment and an optional ``.env`` file.
Use the ``flow-orchestrator`` command for command line overrides.
"""

from .config import load_config
from .factory import create_app

config = load_config()
app = create_app(config)
