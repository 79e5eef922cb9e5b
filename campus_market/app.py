import logging
import os
from datetime import timedelta

import click
from flask import Flask, jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from campus_market.config import Config
from campus_market.db import db
from campus_market.errors import MarketError
from campus_market.routes.cart import bp_cart
from campus_market.routes.items import bp_items
from campus_market.routes.orders import bp_orders
from campus_market.routes.reviews import bp_reviews
from campus_market.services import availability
from campus_market.utils.responses import err


def register_error_handlers(app: Flask):
    @app.errorhandler(MarketError)
    def handle_market_error(e: MarketError):
        db.session.rollback()
        if e.status_code >= 500:
            app.logger.warning("Retryable failure: %s", e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return err(e.description or e.name, e.code or 500)

    @app.errorhandler(SQLAlchemyError)
    def handle_db_error(e: SQLAlchemyError):
        db.session.rollback()
        app.logger.exception("Database error")
        return err("Temporary database problem, please retry", 500, code="retryable")

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        db.session.rollback()
        app.logger.exception("Unhandled error")
        return err("Something went wrong!", 500)


def register_commands(app: Flask):
    @app.cli.command("init-db")
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo("Database initialised")

    @app.cli.command("sweep-reservations")
    @click.option("--max-age-minutes", type=int, default=None,
                  help="Override RESERVATION_TIMEOUT_MINUTES for this run.")
    def sweep_reservations(max_age_minutes):
        """Release items left reserved without a pending order."""
        max_age = timedelta(minutes=max_age_minutes) if max_age_minutes is not None else None
        reclaimed = availability.sweep_stale_reservations(max_age)
        click.echo(f"Reclaimed {reclaimed} item(s)")


def create_app(config_object=None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    app.config["JSON_AS_ASCII"] = False

    logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"))
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)
    with app.app_context():
        db.create_all()

    @app.get("/")
    def index():
        return jsonify(service="campus-market", status="ok")

    app.register_blueprint(bp_items)
    app.register_blueprint(bp_cart)
    app.register_blueprint(bp_orders)
    app.register_blueprint(bp_reviews)

    register_error_handlers(app)
    register_commands(app)

    availability.start_sweeper(app)
    return app


if __name__ == "__main__":
    app = create_app()
    port = int(os.getenv("PORT", "5000"))
    app.run(host="0.0.0.0", port=port)
