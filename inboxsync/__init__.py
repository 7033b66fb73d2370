import click
from flask import Flask

from inboxsync.config import Config
from inboxsync.extensions import db, migrate
from inboxsync.services import EXTENSION_KEY, build_services


def create_app(config_class=Config, **service_overrides):
    """
    Build the Flask app. Keyword arguments (client_factory, oauth_client,
    classifier, counter_store) replace the default collaborators.
    """
    app = Flask(__name__)
    app.config.from_object(config_class)

    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can detect them
    from inboxsync import models  # noqa: F401

    app.extensions[EXTENSION_KEY] = build_services(app.config, **service_overrides)

    # Register blueprints
    from inboxsync.routes.maintenance import maintenance_bp
    from inboxsync.routes.watches import watches_bp
    from inboxsync.routes.webhook import gmail_bp

    app.register_blueprint(gmail_bp)
    app.register_blueprint(watches_bp)
    app.register_blueprint(maintenance_bp)

    @app.cli.command("sweep-watches")
    def sweep_watches_command():
        """Deactivate watches whose expiry has passed."""
        count = app.extensions[EXTENSION_KEY].watches.sweep_expired()
        click.echo(f"Deactivated {count} expired watch(es).")

    return app
