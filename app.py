import os # Standard library for operating system interactions (e.g., creating directories).
import json
import click # Ships with Flask; used for the CLI commands below.
import stripe # Stripe Python library for payment processing.
from flask import Flask, jsonify # The main Flask class.
from config import Config # Import the application's configuration class.
from extensions import db, login_manager, migrate # Import initialized extensions.
from models.user import User # Import User model, primarily for the user_loader.

# Application Factory Function
def create_app(config_class=Config):
    """
    Application factory for creating and configuring the Flask app.

    Args:
        config_class: Configuration object to load (tests pass a TestConfig subclass).
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)

    # --- Logging ---
    # Flask's app.logger is used throughout (current_app.logger in blueprints and services).
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    # --- Initialize Stripe ---
    # Needed for server-side calls (checkout sessions, subscription lookups in webhooks).
    stripe.api_key = app.config['STRIPE_SECRET_KEY']

    # --- Initialize Flask Extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    # The frontend is a single-page app: unauthenticated API calls get JSON 401 instead of a redirect.
    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required."}), 401

    try:
        os.makedirs(app.instance_path)
    except OSError:
        pass # Folder already exists.

    @app.route('/health')
    def health():
        return jsonify({"status": "ok"}), 200

    # --- Import and Register Blueprints ---
    from routes.auth import auth_bp
    from routes.billing import billing_bp
    from routes.alerts import alerts_bp
    from routes.admin import admin_bp
    from routes.jobs import jobs_bp

    app.register_blueprint(auth_bp)    # /auth/...
    app.register_blueprint(billing_bp) # /billing/...
    app.register_blueprint(alerts_bp)  # /alerts/...
    app.register_blueprint(admin_bp)   # /admin/...
    app.register_blueprint(jobs_bp)    # /jobs/... (scheduler, cron key)

    # --- Flask-Login User Loader ---
    @login_manager.user_loader
    def load_user(user_id):
        """Loads a user from the database given their ID."""
        return db.session.get(User, int(user_id))

    # --- Flask CLI scheduled jobs ---
    # Same work as the /jobs endpoints, for schedulers that run commands instead of HTTP calls.
    @app.cli.command("subscription-sweep")
    def subscription_sweep_command():
        """Advance subscriptions through the lifecycle (expire / suspend / archive)."""
        from services.subscription_lifecycle import run_state_sweep
        result = run_state_sweep()
        click.echo(json.dumps(result.to_dict()))
        if result.errors:
            raise SystemExit(1)

    @app.cli.command("retention-emails")
    def retention_emails_command():
        """Send day 0 / 5 / 10 retention emails to lapsed subscribers."""
        from services.retention_emails import send_retention_emails
        result = send_retention_emails()
        click.echo(json.dumps(result.to_dict()))
        if result.errors:
            raise SystemExit(1)

    return app

# Allows running the Flask development server directly using `python app.py`.
if __name__ == '__main__':
    app = create_app()
    app.run(debug=True)
