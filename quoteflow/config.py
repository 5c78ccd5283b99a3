"""
Application configuration
"""
import os
from datetime import timedelta

basedir = os.path.abspath(os.path.dirname(__file__))

class Config:
    """Base configuration."""
    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, '..', 'instance', 'quoteflow.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
    }

    # Redis (winning delivery strategy cache)
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
    DELIVERY_STRATEGY_CACHE_TTL = int(os.environ.get('DELIVERY_STRATEGY_CACHE_TTL', 7 * 24 * 3600))

    # WhatsApp gateway (Evolution API). Environment values win over stored integrations.
    EVOLUTION_API_URL = os.environ.get('EVOLUTION_API_URL')
    EVOLUTION_API_TOKEN = os.environ.get('EVOLUTION_API_TOKEN')
    EVOLUTION_INSTANCE = os.environ.get('EVOLUTION_INSTANCE')
    EVOLUTION_SEND_ENDPOINT = os.environ.get('EVOLUTION_SEND_ENDPOINT')
    EVOLUTION_WEBHOOK_SECRET = os.environ.get('EVOLUTION_WEBHOOK_SECRET')
    EVOLUTION_TIMEOUT = float(os.environ.get('EVOLUTION_TIMEOUT', 10))  # seconds per attempt
    EVOLUTION_MAX_ATTEMPTS = int(os.environ.get('EVOLUTION_MAX_ATTEMPTS', 48))
    DEFAULT_COUNTRY_CODE = os.environ.get('DEFAULT_COUNTRY_CODE', '55')

    # Email provider (Resend)
    RESEND_API_URL = os.environ.get('RESEND_API_URL', 'https://api.resend.com/emails')
    RESEND_API_KEY = os.environ.get('RESEND_API_KEY')
    EMAIL_FROM = os.environ.get('EMAIL_FROM')
    EMAIL_FROM_NAME = os.environ.get('EMAIL_FROM_NAME', 'QuoteFlow')
    EMAIL_TIMEOUT = float(os.environ.get('EMAIL_TIMEOUT', 15))

    # Language model (OpenAI-compatible chat completions)
    LLM_API_URL = os.environ.get('LLM_API_URL', 'https://api.openai.com/v1/chat/completions')
    LLM_API_KEY = os.environ.get('LLM_API_KEY') or os.environ.get('OPENAI_API_KEY')
    LLM_MODEL = os.environ.get('LLM_MODEL', 'gpt-4o-mini')
    LLM_TIMEOUT = float(os.environ.get('LLM_TIMEOUT', 30))

    # Supplier links
    FRONTEND_BASE_URL = os.environ.get('FRONTEND_BASE_URL', 'http://localhost:5173')
    SHORT_LINKS_ENABLED = os.environ.get('SHORT_LINKS_ENABLED', 'true').lower() == 'true'
    QUOTE_TOKEN_TTL_DAYS = int(os.environ.get('QUOTE_TOKEN_TTL_DAYS', 30))

    # Dispatch and reminders
    DISPATCH_MAX_WORKERS = int(os.environ.get('DISPATCH_MAX_WORKERS', 4))
    REMINDER_DEFAULT_HOURS = int(os.environ.get('REMINDER_DEFAULT_HOURS', 48))
    REMINDER_MIN_INTERVAL_HOURS = int(os.environ.get('REMINDER_MIN_INTERVAL_HOURS', 24))

    # Negotiation policy
    NEGOTIATION_VIABILITY_THRESHOLD = float(os.environ.get('NEGOTIATION_VIABILITY_THRESHOLD', 5.0))
    NEGOTIATION_MARKET_FACTOR = float(os.environ.get('NEGOTIATION_MARKET_FACTOR', 0.85))
    NEGOTIATION_CONFIDENCE_THRESHOLD = float(os.environ.get('NEGOTIATION_CONFIDENCE_THRESHOLD', 70))

    # CORS
    CORS_ENABLED = os.environ.get('ENABLE_CORS', 'false').lower() == 'true'

    # Session
    PERMANENT_SESSION_LIFETIME = timedelta(hours=24)

class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False

class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False

    # Override with production values
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL')

    # Security
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

class TestingConfig(Config):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    # No Redis in tests; the strategy cache is skipped when unavailable
    REDIS_URL = None
    # Tests never read gateway credentials from the developer's environment
    EVOLUTION_API_URL = None
    EVOLUTION_API_TOKEN = None
    EVOLUTION_INSTANCE = None
    EVOLUTION_SEND_ENDPOINT = None
    EVOLUTION_WEBHOOK_SECRET = None
    EVOLUTION_MAX_ATTEMPTS = 48
    SHORT_LINKS_ENABLED = True
    RESEND_API_KEY = None
    EMAIL_FROM = None
    LLM_API_KEY = 'test-llm-key'
    FRONTEND_BASE_URL = 'https://app.example.com'
    DISPATCH_MAX_WORKERS = 2

# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
