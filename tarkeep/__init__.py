import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (skipped when no log directory is configured)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'tarkeep.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def _ensure_sqlite_dir(uri):
    if uri.startswith('sqlite:///') and ':memory:' not in uri:
        db_dir = os.path.dirname(uri.replace('sqlite:///', '', 1))
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)


def create_app(config_name=None, test_config=None):
    """Flask application factory"""
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from tarkeep.config import config
    app.config.from_object(config.get(config_name, config['default']))
    if test_config:
        app.config.update(test_config)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)
    _ensure_sqlite_dir(app.config['SQLALCHEMY_DATABASE_URI'])

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from tarkeep.routes import jobs_routes, history_routes
    app.register_blueprint(jobs_routes.bp)
    app.register_blueprint(history_routes.bp)

    # Register CLI commands
    from tarkeep.cli import backup_cli
    app.cli.add_command(backup_cli)

    # Health check endpoint
    @app.route('/health')
    def health():
        job_scheduler = app.extensions.get('tarkeep_scheduler')
        return {
            'status': 'healthy',
            'scheduler_running': bool(job_scheduler and job_scheduler.running)
        }, 200

    # Initialize database schema
    from tarkeep import models  # noqa: F401
    with app.app_context():
        db.create_all()

    # Start the background scheduler when enabled for this process
    if app.config.get('SCHEDULER_ENABLED', False):
        from tarkeep.scheduler import start_scheduler, stop_scheduler
        import atexit

        app.logger.info("Initializing scheduler in this process...")
        start_scheduler(app)

        # Stop the scheduler on interpreter shutdown
        atexit.register(stop_scheduler, app)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler disabled in this process (SCHEDULER_ENABLED is false)")

    return app
