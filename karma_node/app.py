"""
karma_node/app.py
-----------------
Entrypoint for running the API via:

    uvicorn karma_node.app:app

The engine is built from karma_config.yaml (or defaults) in the working
directory. Route wiring lives in karma_node.karma_api.
"""

from .karma_api import create_app

app = create_app()
