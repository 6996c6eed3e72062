import logging
import os

from flask import Blueprint, Flask, jsonify, session
from flask_session import Session
from pydantic import ValidationError
from pymongo import MongoClient

from auth import PURPOSE_RESET, PURPOSE_VERIFY, consume_codes, issue_code, verify_code
from config import Config
# Import authentication functions from Credentials.py
from Credentials import (
    anonymous_user_exists,
    create_anonymous_user,
    get_user_by_email,
    get_user_by_id,
    login_user,
    mark_email_verified,
    public_user,
    register_user,
    update_password,
)
from database import close_db, init_db
from extensions import limiter
from lyrics_llm import LyricsWriter
from mongo_integration import mongo_bp
from payments import RazorpayClient, payments_bp
from schemas import (
    EmailRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    VerifyEmailRequest,
    parse_body,
    validation_details,
)
from songs import songs_bp
from suno_client import SunoClient

auth_bp = Blueprint('auth_bp', __name__)


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger('werkzeug').setLevel(logging.WARNING)

    if app.config["SESSION_TYPE"] == "mongodb":
        app.config.setdefault("SESSION_MONGODB", MongoClient(app.config["MONGO_URI"]))
        app.config.setdefault("SESSION_MONGODB_DB", app.config["MONGO_DB_NAME"])
    if app.config["SESSION_TYPE"]:
        Session(app)

    limiter.init_app(app)

    init_db(app.config["DATABASE_PATH"])
    app.teardown_appcontext(close_db)

    app.extensions["suno"] = SunoClient.from_config(app.config)
    app.extensions["lyrics_writer"] = LyricsWriter.from_config(app.config)
    app.extensions["razorpay"] = RazorpayClient.from_config(app.config)

    app.register_blueprint(auth_bp)
    app.register_blueprint(songs_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(mongo_bp)

    register_error_handlers(app)

    if app.config["DEMO_MODE"]:
        app.logger.info("DEMO_MODE enabled: external services are mocked")
    return app


def register_error_handlers(app):
    @app.errorhandler(ValidationError)
    def invalid_input(e):
        return jsonify({"error": "Invalid input", "details": validation_details(e)}), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests. Please try again later."}), 429

    @app.errorhandler(500)
    def internal_error(e):
        app.logger.error("Unhandled error: %s", getattr(e, "original_exception", e))
        return jsonify({"error": "Internal server error"}), 500


# Accounts

@auth_bp.route('/api/auth/register', methods=['POST'])
@limiter.limit("5/minute")
def register():
    data = parse_body(RegisterRequest)
    user = register_user(data.name, data.email, data.password)
    if user is None:
        return jsonify({"error": "User already exists. Please Login."}), 409
    issue_code(user, PURPOSE_VERIFY)
    return jsonify({
        "message": "Otp sent to your email. Please verify to complete registration.",
        "user": public_user(user),
    }), 201


@auth_bp.route('/api/auth/send-verification', methods=['POST'])
@limiter.limit("3/minute")
def send_verification():
    data = parse_body(EmailRequest)
    user = get_user_by_email(data.email)
    if user is None:
        return jsonify({"error": "User not found"}), 404
    if user["email_verified"]:
        return jsonify({"error": "Email already verified"}), 400
    issue_code(user, PURPOSE_VERIFY)
    return jsonify({"message": "Verification code sent"})


@auth_bp.route('/api/auth/verify-email', methods=['POST'])
@limiter.limit("10/minute")
def verify_email():
    data = parse_body(VerifyEmailRequest)
    user = get_user_by_email(data.email)
    if user is None:
        return jsonify({"error": "User not found"}), 404

    valid, error = verify_code(user["id"], PURPOSE_VERIFY, data.code)
    if not valid:
        return jsonify({"error": error}), 400

    mark_email_verified(user["id"])
    consume_codes(user["id"], PURPOSE_VERIFY)
    session["user_id"] = user["id"]
    session.permanent = True
    return jsonify({"message": "Email verified successfully", "user": public_user(get_user_by_id(user["id"]))})


@auth_bp.route('/api/auth/login', methods=['POST'])
@limiter.limit("10/minute")
def login():
    data = parse_body(LoginRequest)
    message, user = login_user(data.email, data.password)

    if message == "Login successful":
        session["user_id"] = user["id"]
        session.permanent = True
        return jsonify({"message": message, "user": public_user(user)})
    if message == "Email not verified":
        return jsonify({"error": message, "needsVerification": True}), 403
    return jsonify({"error": message}), 401


@auth_bp.route('/api/auth/logout', methods=['POST'])
def logout():
    session.pop("user_id", None)
    return jsonify({"message": "Logged out"})


@auth_bp.route('/api/auth/me', methods=['GET'])
def me():
    user_id = session.get("user_id")
    user = get_user_by_id(user_id) if user_id is not None else None
    if user is None:
        session.pop("user_id", None)
        return jsonify({"error": "Not authenticated"}), 401
    return jsonify({"user": public_user(user)})


@auth_bp.route('/api/auth/forgot-password', methods=['POST'])
@limiter.limit("3/minute")
def forgot_password():
    data = parse_body(EmailRequest)
    user = get_user_by_email(data.email)
    if user is not None:
        issue_code(user, PURPOSE_RESET)
    # Same answer either way so accounts cannot be discovered.
    return jsonify({"message": "If an account exists for this email, a reset code has been sent."})


@auth_bp.route('/api/auth/reset-password', methods=['POST'])
@limiter.limit("5/minute")
def reset_password():
    data = parse_body(ResetPasswordRequest)
    user = get_user_by_email(data.email)
    if user is None:
        return jsonify({"error": "Invalid code"}), 400

    valid, error = verify_code(user["id"], PURPOSE_RESET, data.code)
    if not valid:
        return jsonify({"error": error}), 400

    update_password(user["id"], data.password)
    consume_codes(user["id"], PURPOSE_RESET)
    return jsonify({"message": "Password updated successfully"})


@auth_bp.route('/api/users/anonymous', methods=['POST'])
def anonymous_user():
    anonymous_id = session.get("anonymous_user_id")
    if anonymous_user_exists(anonymous_id):
        return jsonify({"anonymousUserId": anonymous_id, "created": False})

    anonymous_id = create_anonymous_user()
    session["anonymous_user_id"] = anonymous_id
    session.permanent = True
    return jsonify({"anonymousUserId": anonymous_id, "created": True}), 201


if __name__ == '__main__':
    create_app().run(debug=os.getenv("FLASK_DEBUG") == "1")
