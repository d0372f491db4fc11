import os
import logging

import click
from flask import Flask

from models import db

# Configure logging
logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Create the Flask app
app = Flask(__name__)

# Configure the app
app.secret_key = os.environ.get("SESSION_SECRET") or "a-development-secret-key"

# Configure the audit database - SQLite for development
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get(
    "SQLALCHEMY_DATABASE_URI", "sqlite:///gateway.db")
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
logger.debug(f"Using database URL: {app.config['SQLALCHEMY_DATABASE_URI']}")

# Initialize the database with the app
db.init_app(app)

# Create database tables if they don't exist
with app.app_context():
    # Import models to ensure they're registered
    from gateway.models import AuditEntryRecord  # noqa: F401
    db.create_all()
    logger.info("Database tables created successfully")

# Import routes after initializing the app to avoid circular imports
from gateway.routes import audit_blueprint, fhir_blueprint, ops_blueprint  # noqa: E402

app.register_blueprint(fhir_blueprint)
app.register_blueprint(audit_blueprint)
app.register_blueprint(ops_blueprint)


@app.cli.command('issue-token')
@click.argument('subject_id')
@click.option('--role', required=True, type=click.Choice(['admin', 'practitioner', 'patient']))
@click.option('--resource-id', default=None, help='FHIR id of the caller\'s own resource')
@click.option('--org', default=None, help='Organization id')
@click.option('--ttl', default=None, type=int, help='Lifetime in seconds')
def issue_token(subject_id, role, resource_id, org, ttl):
    """Issue a signed bearer credential for local testing."""
    from gateway.auth import generate_access_token

    try:
        token = generate_access_token(subject_id, role, linked_resource_id=resource_id,
                                      organization_id=org, ttl_seconds=ttl)
    except ValueError as e:
        raise click.ClickException(str(e))
    click.echo(token)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
