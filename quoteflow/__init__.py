"""
QuoteFlow Application Factory
"""
import logging
from flask import Flask, request, jsonify
from flask_socketio import emit
from flask_cors import CORS
from dotenv import load_dotenv

# Import extensions from the extensions module
from quoteflow.extensions import db, socketio, login_manager, migrate

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from quoteflow.config import config

def create_app(config_name='development'):
    """Application factory"""
    # Load environment variables from .env before reading config
    load_dotenv()
    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    socketio.init_app(app, cors_allowed_origins="*", async_mode='threading')
    login_manager.init_app(app)

    # Initialize CORS if needed
    if app.config.get('CORS_ENABLED', False):
        CORS(app)

    # Initialize Redis (optional; delivery strategy cache)
    from quoteflow.utils.redis_manager import init_redis
    init_redis(app)

    # Configure login manager
    @login_manager.user_loader
    def load_user(user_id):
        # Import here to avoid circular dependencies on initialization
        from quoteflow.models import User
        return db.session.get(User, int(user_id))

    # Register blueprints
    from quoteflow.api import api_bp
    from quoteflow.api.webhook_routes import webhooks_bp

    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(webhooks_bp, url_prefix='/webhooks')

    # CLI commands for externally scheduled jobs
    from quoteflow.cli import register_commands
    register_commands(app)

    # Ensure models are imported so SQLAlchemy is aware of them
    from quoteflow import models
    with app.app_context():
        db.create_all()
        logger.info("Database tables created")

    # Socket.IO event handlers
    @socketio.on('connect')
    def handle_connect():
        logger.info(f"Client connected: {request.sid}")
        emit('connected', {'data': 'Connected to QuoteFlow'})

    @socketio.on('disconnect')
    def handle_disconnect():
        logger.info(f"Client disconnected: {request.sid}")

    # Error handlers
    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'success': False, 'error': 'Not found'}), 404

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({'success': False, 'error': 'Internal server error'}), 500

    return app
