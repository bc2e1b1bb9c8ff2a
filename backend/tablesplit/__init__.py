from __future__ import annotations

import logging

from flask import Flask
from flask_cors import CORS

from tablesplit.api.routes import api_bp
from tablesplit.config import Config


def create_app(config: object = Config) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config)
    CORS(app)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app.register_blueprint(api_bp)
    return app
