"""
=============================================================================
CONVERSATION PRACTICE COACH : APPLICATION ENTRY POINT (app.py)
=============================================================================

WHAT THIS FILE DOES (in plain language):
----------------------------------------
This is the "front door" of the server. When you run "python app.py", the computer
starts a web server that the practice web client talks to. The server:

  1. Creates practice sessions and records your side of the conversation
     (microphone + camera, either on this machine or streamed from the browser).
  2. Watches your face while you speak (smile and eye contact) and drives the
     avatar's mouth from your voice and from the partner's spoken replies.
  3. At the end of a session, summarizes your gestures and (optionally) asks
     Azure AI Foundry to write a short coaching report.

The actual URL handlers are defined in routes.py.

HOW TO RUN:
-----------
  - From project root:  python app.py
  - By default the app is at:  http://localhost:5000

CONFIGURATION:
--------------
  - Settings (API keys, ports, lip-sync tuning, etc.) come from the .env file and config.py.
  - Never put real API keys in the code; use environment variables.
=============================================================================
"""

# ---------------------------------------------------------------------------
# Step 1: Load environment variables from .env (before anything else)
# ---------------------------------------------------------------------------
import logging
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

# ---------------------------------------------------------------------------
# Step 2: Import the web framework and our own modules
# ---------------------------------------------------------------------------
from flask import Flask
from flask_cors import CORS
from flask_compress import Compress

import config
from routes import register_routes
from utils.media_devices import log_recorder_support

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

# ---------------------------------------------------------------------------
# Step 3: Warn the user if important settings are missing
# ---------------------------------------------------------------------------
# Missing Foundry or session-API settings only disable those features.
config.warn_missing_config()
log_recorder_support()


def create_app() -> Flask:
    """
    Create and configure the Flask application (the web server).

    What it does:
      - Enables CORS so the practice web client can call the API from another origin.
      - Enables compression for the polled /sessions/<id>/state responses.
      - Registers all URL routes from routes.py.

    Returns:
        The configured Flask application.
    """
    app = Flask(__name__)

    # In production you would restrict this to specific domains.
    CORS(app, resources={r"/*": {"origins": "*"}})

    Compress(app)

    register_routes(app)

    return app


# ---------------------------------------------------------------------------
# Create the one global Flask application
# ---------------------------------------------------------------------------
app = create_app()


# ---------------------------------------------------------------------------
# Run the server when this file is executed directly (e.g. "python app.py")
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    # FLASK_DEBUG: Flask's dev server with reloader. Otherwise Waitress with 6 threads.
    # The reloader is off because it would start every session loop twice.
    if config.FLASK_DEBUG:
        app.run(
            host=config.FLASK_HOST,
            port=config.FLASK_PORT,
            debug=True,
            use_reloader=False,
        )
    else:
        import waitress
        waitress.serve(app, host=config.FLASK_HOST, port=config.FLASK_PORT, threads=6)
