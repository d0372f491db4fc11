from flask_sqlalchemy import SQLAlchemy

# Initialize SQLAlchemy without binding it to a specific app
db = SQLAlchemy()
