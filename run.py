"""Application entry point."""
import os
from datetime import datetime, timedelta

import click
from flask.cli import with_appcontext
from dotenv import load_dotenv

from tpo_attendance import create_app, db

# Load environment variables
load_dotenv()

# Create Flask app
app = create_app(os.getenv('FLASK_ENV', 'development'))

@app.cli.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create a demo operator and an open session."""
    from tpo_attendance.models.user import User, UserRole
    from tpo_attendance.services.attendance_repository import AttendanceRepository
    from tpo_attendance.services.code_generator import generate_network_token, generate_session_code

    operator = User.query.filter_by(email='tpo@college.edu').first()
    if not operator:
        operator = User(email='tpo@college.edu', name='TPO Coordinator', role=UserRole.ADMIN)
        operator.set_password('tpo123456')
        db.session.add(operator)
        db.session.commit()

    session = AttendanceRepository().create_session(
        name='Demo Placement Talk',
        code=generate_session_code(),
        token=generate_network_token(),
        expires_at=datetime.utcnow() + timedelta(minutes=60),
        creator_id=operator.id
    )

    click.echo('Operator: tpo@college.edu / tpo123456')
    click.echo(f'Session code: {session.session_code}')
    click.echo(f'Network token: {session.network_token}')

@app.cli.command('reset-db')
@with_appcontext
def reset_db():
    """Reset database completely."""
    if click.confirm('This will delete all data and recreate tables. Continue?'):
        db.drop_all()
        db.create_all()
        click.echo('Database reset complete!')

if __name__ == '__main__':
    # Development server
    port = int(os.environ.get('PORT', 5000))
    host = os.environ.get('HOST', '127.0.0.1')
    debug = os.environ.get('FLASK_ENV') == 'development'

    app.run(host=host, port=port, debug=debug)
