"""
Event ingestion server built on ingest_sdk.

Serves the ingestion routes (POST /events, GET /users/<id>/journey,
GET /stats, GET /health) and drains the buffer on SIGTERM/SIGINT.

Usage:
    python3 app.py                                             # in-memory storage
    INGEST_DATABASE_URL=postgresql://localhost/events python3 app.py
    INGEST_CONFIG=ingest.yaml PORT=8080 python3 app.py
"""

import logging
import os

from ingest_sdk import create_service, load_config
from ingest_sdk.flask_app import create_app
from ingest_sdk.shutdown import install_shutdown_handlers


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

config = load_config()

logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

service = create_service(config)
app = create_app(service)


@app.route("/")
def index():
    return {"service": "event-ingestion", "storage": config.storage.type}


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    install_shutdown_handlers(service)
    port = int(os.environ.get("PORT", "5000"))
    logger.info(f"Starting ingestion server on port {port}, storage={config.storage.type}")
    app.run(port=port, debug=False, threaded=True)
