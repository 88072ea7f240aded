from __future__ import annotations

import os
from datetime import timedelta

import click
from flask import Flask, session

# Load .env before anything reads the environment (db.py reads MONGO_URI)
from dotenv import load_dotenv

load_dotenv()

from db import db, ensure_indexes  # noqa: E402

import commission  # noqa: E402
import profit_ledger  # noqa: E402
from auth import ROLE_ADMIN, auth_bp, create_user  # noqa: E402
from helpers import build_date_filter, jlog  # noqa: E402
from routes.analytics import analytics_bp  # noqa: E402
from routes.audit_logs import audit_logs_bp  # noqa: E402
from routes.catalog import catalog_bp  # noqa: E402
from routes.defective_products import defective_bp  # noqa: E402
from routes.distributors import distributors_bp  # noqa: E402
from routes.expenses import expenses_bp  # noqa: E402
from routes.gamification import check_period, gamification_bp, recalculate_commissions  # noqa: E402
from routes.profit_history import profit_history_bp  # noqa: E402
from routes.sales import sales_bp  # noqa: E402
from routes.special_sales import special_sales_bp  # noqa: E402
from routes.stock import stock_bp  # noqa: E402
from scheduler import start_scheduler  # noqa: E402

# === Config (env with fallbacks) ===
SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-9f4c1e7a2b8d4f63a0c5e1b7d2f8a4c6e9b3d7f1a5c8e2b6")
SESSION_DAYS = int(os.getenv("SESSION_DAYS", "7"))
SESSION_COOKIE_NAME = "backoffice_session"
SESSION_COOKIE_HTTPONLY = True
SESSION_COOKIE_SAMESITE = "Lax"
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "0") == "1"
SESSION_REFRESH_EACH_REQUEST = True
# background evaluation of finished gamification periods
PERIOD_SCHEDULER = os.getenv("PERIOD_SCHEDULER", "1") == "1"


def create_app(config: dict | None = None):
    app = Flask(__name__)

    # --- Session / cookies ---
    app.secret_key = SECRET_KEY
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=SESSION_DAYS)
    app.config["SESSION_COOKIE_NAME"] = SESSION_COOKIE_NAME
    app.config["SESSION_COOKIE_HTTPONLY"] = SESSION_COOKIE_HTTPONLY
    app.config["SESSION_COOKIE_SAMESITE"] = SESSION_COOKIE_SAMESITE
    app.config["SESSION_COOKIE_SECURE"] = SESSION_COOKIE_SECURE
    app.config["SESSION_REFRESH_EACH_REQUEST"] = SESSION_REFRESH_EACH_REQUEST
    app.config["JSON_SORT_KEYS"] = False
    if config:
        app.config.update(config)

    # Keep sessions permanent whenever user is logged in
    @app.before_request
    def _keep_permanent_sessions():
        if session.get("user_id"):
            session.permanent = True

    # --- Blueprints ---
    app.register_blueprint(auth_bp)
    app.register_blueprint(catalog_bp)
    app.register_blueprint(distributors_bp)
    app.register_blueprint(stock_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(gamification_bp)
    app.register_blueprint(profit_history_bp)
    app.register_blueprint(special_sales_bp)
    app.register_blueprint(defective_bp)
    app.register_blueprint(expenses_bp)
    app.register_blueprint(audit_logs_bp)
    app.register_blueprint(analytics_bp)

    @app.errorhandler(404)
    def _not_found(_e):
        return {"success": False, "message": "Not found"}, 404

    @app.errorhandler(405)
    def _method_not_allowed(_e):
        return {"success": False, "message": "Method not allowed"}, 405

    # --- Utility routes ---
    @app.route("/healthz")
    def healthz():
        return "ok", 200

    register_cli(app)

    if PERIOD_SCHEDULER and not app.config.get("TESTING"):
        start_scheduler()
    return app


# ---------------------------
# CLI (flask <command>)
# ---------------------------

def register_cli(app: Flask):
    @app.cli.command("create-admin")
    @click.option("--name", required=True)
    @click.option("--email", required=True)
    @click.password_option()
    def create_admin(name, email, password):
        """Create an administrator account."""
        if db["users"].find_one({"email": email.strip().lower()}):
            raise click.ClickException("email already registered")
        doc = create_user(name, email, password, ROLE_ADMIN)
        click.echo(f"admin created: {doc['_id']}")

    @app.cli.command("ensure-indexes")
    def ensure_indexes_cmd():
        """Create MongoDB indexes."""
        ensure_indexes()
        click.echo("indexes ok")

    @app.cli.command("recalc-commissions")
    @click.option("--start", "start_date", default=None, help="YYYY-MM-DD (inclusive)")
    @click.option("--end", "end_date", default=None, help="YYYY-MM-DD (inclusive)")
    @click.option("--apply", "apply_changes", is_flag=True, help="Write the changes (default is a dry run).")
    def recalc_commissions(start_date, end_date, apply_changes):
        """Recompute sale commissions from the ranking of each sale's period."""
        f = build_date_filter("w", start_date, end_date).get("w") or {}
        result = recalculate_commissions(f.get("$gte"), f.get("$lt"), dry_run=not apply_changes)
        for c in result["changes"]:
            click.echo(f"{c['sale_id']}: {c['old_percentage']}% -> {c['new_percentage']}% "
                       f"(distributor {c['old_distributor_profit']} -> {c['new_distributor_profit']})")
        click.echo(f"checked={result['checked']} changed={result['changed']} dry_run={result['dry_run']}")

    @app.cli.command("backfill-ledger")
    def backfill_ledger():
        """Write missing profit history entries for confirmed sales."""
        result = profit_ledger.backfill_from_sales()
        click.echo(f"sales={result['sales']} entries={result['entries']}")

    @app.cli.command("evaluate-period")
    def evaluate_period_cmd():
        """Evaluate the last finished gamification period if it has no winner yet."""
        result = check_period()
        jlog("cli_evaluate_period", evaluated=result["evaluated"], reason=result.get("reason"))
        if result["evaluated"]:
            click.echo(f"winner: {result['winner'].get('winner_name')}")
        else:
            click.echo(f"not evaluated: {result.get('reason')}")
        start, end = commission.previous_period_bounds(commission.get_config())
        click.echo(f"period: {start.isoformat()} .. {end.isoformat()}")


# Gunicorn entrypoint: `gunicorn app:app`
app = create_app()

if __name__ == "__main__":
    app.run(debug=True)
