"""TPO Attendance - Application Factory."""
import logging
import os
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_jwt_extended import JWTManager
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Initialize extensions
db = SQLAlchemy()
migrate = Migrate()
jwt = JWTManager()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["500 per day", "100 per hour"]
)

def create_app(config_name: str = None) -> Flask:
    """Application factory pattern."""
    app = Flask(__name__)

    # Load configuration
    from tpo_attendance.config import get_config
    config_class = get_config(config_name)
    app.config.from_object(config_class)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    limiter.init_app(app)

    CORS(app, origins=app.config.get('CORS_ORIGINS', ["*"]), supports_credentials=True)

    setup_logging(app)
    setup_stores(app)
    register_blueprints(app)
    register_error_handlers(app)
    setup_database(app)
    register_commands(app)

    @app.route('/health')
    def health_check():
        return jsonify({
            'status': 'healthy',
            'service': 'TPO Attendance',
            'version': '1.0.0'
        })

    return app

def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""
    from tpo_attendance.api.auth import auth_bp
    from tpo_attendance.api.sessions import sessions_bp
    from tpo_attendance.api.attendance import attendance_bp

    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(sessions_bp, url_prefix='/api/sessions')
    app.register_blueprint(attendance_bp, url_prefix='/api/attendance')

def setup_stores(app: Flask) -> None:
    """Attach the per-device key-value store used by fingerprints and the ledger."""
    from tpo_attendance.services.kv_store import MemoryStore, RedisStore

    redis_url = app.config.get('REDIS_URL')
    if redis_url:
        app.extensions['kv_store'] = RedisStore.from_url(redis_url)
        app.logger.info('Using Redis key-value store at %s', redis_url)
    else:
        app.extensions['kv_store'] = MemoryStore()

def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""
    from tpo_attendance.utils.helpers import handle_error
    from werkzeug.exceptions import HTTPException

    @app.errorhandler(400)
    def bad_request(error):
        return handle_error(error, 400)

    @app.errorhandler(401)
    def unauthorized(error):
        return handle_error(error, 401)

    @app.errorhandler(403)
    def forbidden(error):
        return handle_error(error, 403)

    @app.errorhandler(404)
    def not_found(error):
        return handle_error(error, 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return handle_error("Method not allowed", 405)

    @app.errorhandler(429)
    def rate_limited(error):
        return handle_error("Too many requests, slow down", 429)

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        app.logger.error('Unhandled server error: %s', error)
        return handle_error("Internal server error", 500)

    @app.errorhandler(HTTPException)
    def handle_exception(e):
        return handle_error(e.description, e.code)

    # JWT error handlers
    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({
            'error': True,
            'message': 'Token has expired',
            'status_code': 401
        }), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        return jsonify({
            'error': True,
            'message': 'Invalid token',
            'status_code': 401
        }), 401

    @jwt.unauthorized_loader
    def missing_token_callback(error):
        return jsonify({
            'error': True,
            'message': 'Authorization token required',
            'status_code': 401
        }), 401

def setup_logging(app: Flask) -> None:
    """Setup application logging."""
    level = getattr(logging, app.config.get('LOG_LEVEL', 'INFO'), logging.INFO)
    logging.getLogger('tpo_attendance').setLevel(level)

    if not app.debug and not app.testing:
        log_file = app.config.get('LOG_FILE', 'logs/app.log')
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(level)
        app.logger.addHandler(file_handler)
        logging.getLogger('tpo_attendance').addHandler(file_handler)

        app.logger.setLevel(level)
        app.logger.info('TPO Attendance startup')

def setup_database(app: Flask) -> None:
    """Setup database connections."""
    with app.app_context():
        # Import all models so metadata is complete
        from tpo_attendance.models import User, AttendanceSession, AttendanceRecord  # noqa: F401

def register_commands(app: Flask) -> None:
    """Register CLI commands."""
    import click

    @app.cli.command('init-db')
    @click.option('--drop', is_flag=True, help='Drop existing tables')
    def init_db(drop):
        """Initialize the database."""
        if drop:
            db.drop_all()
            click.echo('Dropped all tables.')

        db.create_all()
        click.echo('Created all tables.')

    @app.cli.command('create-admin')
    def create_admin():
        """Create admin user."""
        email = click.prompt('Admin email')
        name = click.prompt('Admin name')
        password = click.prompt('Password', hide_input=True, confirmation_prompt=True)

        from tpo_attendance.models.user import User, UserRole

        admin = User(
            email=email.lower().strip(),
            name=name,
            role=UserRole.ADMIN
        )
        admin.set_password(password)

        try:
            db.session.add(admin)
            db.session.commit()
            click.echo(f'Admin user created: {email}')
        except Exception as e:
            db.session.rollback()
            click.echo(f'Error creating admin: {str(e)}')

    @app.cli.command('purge-expired')
    def purge_expired():
        """Deactivate sessions whose expiry has passed."""
        from tpo_attendance.services.attendance_repository import AttendanceRepository

        count = AttendanceRepository().deactivate_expired_sessions()
        click.echo(f'Deactivated {count} expired session(s).')
