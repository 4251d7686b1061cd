from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
import logging
import os

# Shared database handle; bound to the app inside create_app().
db = SQLAlchemy()


def default_data_folder():
    """
    Returns the per-user folder that holds the database and the photo store.
    On Windows this lives under %APPDATA%, elsewhere under the home directory.
    """
    app_data_path = os.environ.get('APPDATA')
    if app_data_path:
        return os.path.join(app_data_path, 'AmadorHerdInfo')
    return os.path.join(os.path.expanduser("~"), '.AmadorHerdInfo')


def create_app(test_config=None):
    """Application factory function."""
    app = Flask(__name__, instance_relative_config=False)
    CORS(app, resources={r"/api/*": {"origins": "*"}})

    data_folder = default_data_folder()

    app.config.from_mapping(
        SECRET_KEY='dev',
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{os.path.join(data_folder, 'database.db')}",
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        PHOTO_STORAGE_DIR=os.path.join(data_folder, 'photos'),
        PHOTO_STORAGE=None,  # a ready-made storage backend, mostly for tests
        MAX_CONTENT_LENGTH=50 * 1024 * 1024,
        LICENSE_GRACE_PERIOD_DAYS=30,
        INVITATION_EXPIRY_DAYS=7,
        LOG_LEVEL='INFO',
    )

    if test_config is None:
        # HERDINFO_SQLALCHEMY_DATABASE_URI, HERDINFO_LOG_LEVEL, ...
        app.config.from_prefixed_env('HERDINFO')
    else:
        app.config.from_mapping(test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    app.logger.setLevel(app.config['LOG_LEVEL'])

    if app.config['SQLALCHEMY_DATABASE_URI'].startswith(f"sqlite:///{data_folder}"):
        os.makedirs(data_folder, exist_ok=True)

    db.init_app(app)

    from .storage import init_photo_storage
    init_photo_storage(app)

    with app.app_context():
        from .routes import api
        app.register_blueprint(api, url_prefix='/api')

        # Create database tables for our models
        db.create_all()

    app.logger.info("AmadorHerdInfo backend ready (database: %s)", app.config['SQLALCHEMY_DATABASE_URI'])
    return app
