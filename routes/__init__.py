from routes.health import health_bp
from routes.auth import auth_bp
from routes.password_reset import password_bp
from routes.admin import admin_bp

__all__ = ["health_bp", "auth_bp", "password_bp", "admin_bp"]
