import os
import logging
import traceback
from importlib import import_module

from flask import Flask, jsonify
from flask_cors import CORS

from src.config import config
from src.extensions import db

# (module, blueprint attribute, url prefix)
BLUEPRINTS = (
    ('src.routes.automation', 'automation_bp', '/api/v1/automation'),
    ('src.routes.events', 'events_bp', '/api/v1/events'),
    ('src.routes.webhook', 'webhook_bp', '/api/v1/webhooks'),
)


def _configure_file_logging(app):
    """Write INFO and above to logs/automation_engine.log outside debug and tests."""
    if app.debug or app.testing:
        return

    os.makedirs('logs', exist_ok=True)
    handler = logging.FileHandler('logs/automation_engine.log')
    handler.setFormatter(logging.Formatter(
        '%(asctime)s %(levelname)s %(name)s: %(message)s [in %(pathname)s:%(lineno)d]'
    ))
    handler.setLevel(logging.INFO)

    # Service modules log through logging.getLogger(__name__), so attach to the root logger too
    logging.getLogger().addHandler(handler)
    logging.getLogger().setLevel(app.config.get('LOG_LEVEL', 'INFO'))
    app.logger.addHandler(handler)
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
    app.logger.info('Automation engine startup')


def _register_blueprints(app):
    for module_name, attribute, url_prefix in BLUEPRINTS:
        try:
            blueprint = getattr(import_module(module_name), attribute)
            app.register_blueprint(blueprint, url_prefix=url_prefix)
            app.logger.info(f"Registered {blueprint.name} blueprint at {url_prefix}")
        except Exception as e:
            app.logger.error(f"Failed to register {module_name}: {str(e)}")
            app.logger.error(traceback.format_exc())


def _create_tables(app, config_name):
    # Schema changes in production go through migrations unless explicitly enabled
    create_all = config_name != 'production' or os.environ.get('STARTUP_DB_CREATE_ALL', 'false').lower() == 'true'
    if not create_all:
        app.logger.info("Skipping db.create_all() on startup in production")
        return

    try:
        with app.app_context():
            db.create_all()
        app.logger.info("Database tables created/verified")
    except Exception as e:
        app.logger.error(f"Failed to create/verify database tables on startup: {str(e)}")


def _init_scheduler(app, config_name):
    from src.services.scheduler import get_dispatch_scheduler

    scheduler = get_dispatch_scheduler()
    scheduler.init_app(app)

    if config_name == 'production' or app.config.get('START_SCHEDULER', False):
        try:
            scheduler.start()
            app.logger.info("Dispatch scheduler started automatically")
        except Exception as e:
            app.logger.error(f"Failed to start dispatch scheduler: {str(e)}")
    return scheduler


def create_app(config_name=None):
    """Application factory."""
    config_name = config_name or os.environ.get('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if config_name == 'production':
        config[config_name].validate_config()

    CORS(app, origins=app.config['CORS_ORIGINS'], supports_credentials=True)
    db.init_app(app)

    _configure_file_logging(app)
    _register_blueprints(app)

    from src.services.automation.metrics import init_metrics
    init_metrics(app)

    _init_scheduler(app, config_name)
    _create_tables(app, config_name)

    try:
        from src.utils.error_handlers import register_error_handlers
        register_error_handlers(app)
    except Exception as e:
        app.logger.error(f"Failed to register error handlers: {str(e)}")

    @app.route('/')
    def index():
        return jsonify({'status': 'ok', 'message': 'Automation engine is running'})

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=5001, debug=True)
