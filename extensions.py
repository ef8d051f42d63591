from flask_sqlalchemy import SQLAlchemy # ORM for database interactions.
from flask_login import LoginManager    # Manages user sessions for login and logout functionality.
from flask_migrate import Migrate       # Alembic migrations bound to the app in create_app.

# Initialize SQLAlchemy.
# This instance is associated with the Flask app in the application factory
# (create_app in app.py) using db.init_app(app).
db = SQLAlchemy()

# Initialize Flask-Login's LoginManager.
# Handles logging users in and out and remembering their sessions. Configured in create_app.
login_manager = LoginManager()

# Flask-Migrate, initialised with both the app and db in create_app.
migrate = Migrate()
