# app.py

import os

from dotenv import load_dotenv
from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

# .env must be loaded before config classes read os.environ
load_dotenv()

from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from venture_crm.importer import init_importer  # noqa: E402
from venture_crm.models import configure_sqlite_engine, db  # noqa: E402
from venture_crm.utils.logging_config import setup_logging  # noqa: E402

CONFIG_CLASSES = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}

flask_env = os.environ.get("FLASK_ENV", "development")
if flask_env == "production":
    validate_and_exit(flask_env)

app = Flask(__name__)
for config_class in CONFIG_CLASSES.get(flask_env, CONFIG_CLASSES["development"]):
    app.config.from_object(config_class)

db.init_app(app)
setup_logging(app)

with app.app_context():
    # Test fixtures drop and recreate tables, so foreign keys stay unenforced there
    configure_sqlite_engine(db.engine, enforce_foreign_keys=not app.config.get("TESTING", False))
    if not app.config.get("TESTING", False):
        db.create_all()

init_importer(app)

if app.config.get("METRICS_ENABLED", False):

    @app.get(app.config.get("METRICS_ENDPOINT", "/metrics"))
    def prometheus_metrics():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


@app.errorhandler(404)
def not_found_error(error):
    return jsonify({"error": "Not found."}), 404


@app.errorhandler(500)
def internal_error(error):
    db.session.rollback()
    app.logger.exception("Unhandled error while serving request")
    return jsonify({"error": "Internal server error."}), 500


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
