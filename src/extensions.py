from flask_sqlalchemy import SQLAlchemy

# Shared SQLAlchemy instance, bound to the app in create_app()
db = SQLAlchemy()
