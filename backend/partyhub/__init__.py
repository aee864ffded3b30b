from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    flask_app.logger.setLevel(flask_app.config.get('LOG_LEVEL', 'INFO'))

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Engine wiring: one round owner, one broadcaster, one identity provider per app
    from partyhub.identity import StaticIdentityProvider
    from partyhub.services.broadcast import EventBroadcaster
    from partyhub.services.quiz.rounds import RoundStateMachine, get_round_machine
    from partyhub.services.quiz.timer import RoundTimer

    broadcaster = EventBroadcaster(socketio, replay_size=int(flask_app.config.get('BROADCAST_REPLAY_SIZE', 20)))
    flask_app.extensions['broadcaster'] = broadcaster
    RoundStateMachine(broadcaster, RoundTimer(socketio), app=flask_app)
    flask_app.extensions.setdefault(
        'identity_provider', StaticIdentityProvider(flask_app.config.get('IDENTITY_STATIC_CODES', {}))
    )

    # Import and register blueprints here
    from partyhub.main import main
    flask_app.register_blueprint(main)

    from partyhub.api.quiz import quiz
    flask_app.register_blueprint(quiz, url_prefix='/api/quiz')

    from partyhub.api.lottery import lottery
    flask_app.register_blueprint(lottery, url_prefix='/api/lottery')

    # Register Socket.IO event handlers
    from partyhub.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    from partyhub.errors import EngineError, InvariantViolation

    @flask_app.errorhandler(EngineError)
    def handle_engine_error(exc):
        if isinstance(exc, InvariantViolation):
            flask_app.logger.error(f"[invariant] {exc.message} details={exc.details}")
            try:
                get_round_machine().recover()
            except Exception:
                flask_app.logger.exception("[engine-recheck-failed]")
        return jsonify(exc.to_dict()), exc.status_code

    # Flask-Login user loader
    from partyhub.models import Participant

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(Participant, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Login required', 'reason': 'unauthorized'}), 401

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            admin = Participant(display_name=flask_app.config['ADMIN_USERNAME'], is_admin=True, is_playing=False)
            admin.set_password(flask_app.config['ADMIN_PASSWORD'])
            db.session.add(admin)
            db.session.commit()
            print('Database has been reset and seeded!')

    @click.command('engine-recheck')
    def engine_recheck_command():
        """Recompute round status from the ledger and repair cached totals."""
        with flask_app.app_context():
            report = get_round_machine().recover()
            print(report)

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(engine_recheck_command)

    return flask_app
