import os
from dotenv import load_dotenv

load_dotenv()


def _env_int(name, default):
    return int(os.environ.get(name, str(default)))


def _env_flag(name, default='false'):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """Settings shared by every environment."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    # Dispatcher
    DISPATCH_INTERVAL_SECONDS = _env_int('DISPATCH_INTERVAL_SECONDS', 60)
    DISPATCH_BATCH_SIZE = _env_int('DISPATCH_BATCH_SIZE', 50)
    DISPATCH_MAX_WORKERS = _env_int('DISPATCH_MAX_WORKERS', 4)
    DISPATCH_MAX_RETRIES = _env_int('DISPATCH_MAX_RETRIES', 3)
    DISPATCH_RETRY_BACKOFF_SECONDS = _env_int('DISPATCH_RETRY_BACKOFF_SECONDS', 300)  # 5 minutes
    DISPATCH_RETRY_BACKOFF_MAX_SECONDS = _env_int('DISPATCH_RETRY_BACKOFF_MAX_SECONDS', 21600)  # 6 hours
    DISPATCH_CLAIM_TIMEOUT_SECONDS = _env_int('DISPATCH_CLAIM_TIMEOUT_SECONDS', 900)  # 15 minutes
    START_SCHEDULER = _env_flag('START_SCHEDULER')

    # 'memory', 'database' or 'none'
    METRICS_BACKEND = os.environ.get('METRICS_BACKEND', 'memory')

    # Channel adapters
    RESEND_API_KEY = os.environ.get('RESEND_API_KEY')
    EMAIL_FROM = os.environ.get('EMAIL_FROM', 'reviews@reputation-engine.local')
    SMS_GATEWAY_URL = os.environ.get('SMS_GATEWAY_URL')
    SMS_GATEWAY_TOKEN = os.environ.get('SMS_GATEWAY_TOKEN')
    SMS_FROM_NUMBER = os.environ.get('SMS_FROM_NUMBER')
    SMS_GATEWAY_TIMEOUT = _env_int('SMS_GATEWAY_TIMEOUT', 15)

    # Shared secret for signed delivery status callbacks; unsigned callbacks are accepted when unset
    DELIVERY_WEBHOOK_SECRET = os.environ.get('DELIVERY_WEBHOOK_SECRET')

    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


class DevelopmentConfig(Config):
    DEBUG = True
    TESTING = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///automation_engine.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = True


class ProductionConfig(Config):
    """Production runs against PostgreSQL with every channel configured."""
    DEBUG = False
    TESTING = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get('SECRET_KEY')
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '').split(',')

    # (setting, environment variable)
    REQUIRED_SETTINGS = (
        ('SQLALCHEMY_DATABASE_URI', 'DATABASE_URL'),
        ('SECRET_KEY', 'SECRET_KEY'),
        ('RESEND_API_KEY', 'RESEND_API_KEY'),
        ('SMS_GATEWAY_URL', 'SMS_GATEWAY_URL'),
        ('DELIVERY_WEBHOOK_SECRET', 'DELIVERY_WEBHOOK_SECRET'),
    )

    @classmethod
    def validate_config(cls):
        for setting, env_var in cls.REQUIRED_SETTINGS:
            if not getattr(cls, setting):
                raise ValueError(f"{env_var} environment variable is required for production")

        if not cls.CORS_ORIGINS or cls.CORS_ORIGINS == ['']:
            raise ValueError("CORS_ORIGINS environment variable is required for production")


class TestingConfig(Config):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    START_SCHEDULER = False
    DISPATCH_MAX_WORKERS = 1
    METRICS_BACKEND = 'memory'
    DELIVERY_WEBHOOK_SECRET = None


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
