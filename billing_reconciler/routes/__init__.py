from .admin import admin_bp
from .health import health_bp
from .subscriptions import subscription_bp
from .webhooks import webhook_bp


def register_blueprints(app):
    app.register_blueprint(webhook_bp)
    app.register_blueprint(subscription_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(health_bp)
