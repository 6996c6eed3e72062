import logging
import secrets
import smtplib
from datetime import datetime, timedelta, timezone
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app, session

from Credentials import delete_codes, get_active_code, increment_code_attempts, replace_code
from database import parse_timestamp

log = logging.getLogger(__name__)

PURPOSE_VERIFY = "verify"
PURPOSE_RESET = "reset"


def session_identity():
    """The (user_id, anonymous_user_id) pair of the current session; either may be None."""
    return session.get("user_id"), session.get("anonymous_user_id")


def send_email(recipient_email, subject, body):
    config = current_app.config
    try:
        # Construct MIME email
        msg = MIMEMultipart()
        msg["From"] = config["SENDER_EMAIL"]
        msg["To"] = recipient_email
        msg["Subject"] = Header(subject, "utf-8")

        # Attach body as HTML with UTF-8
        msg.attach(MIMEText(body, "html", "utf-8"))

        with smtplib.SMTP(config["SMTP_SERVER"], config["SMTP_PORT"]) as server:
            server.starttls()
            if config["SMTP_USER"]:
                server.login(config["SMTP_USER"], config["SMTP_PASSWORD"])
            server.sendmail(config["SENDER_EMAIL"], recipient_email, msg.as_string())
        log.info("Email '%s' sent to %s", subject, recipient_email)
        return True
    except (smtplib.SMTPException, OSError) as e:
        log.error("Error sending email to %s: %s", recipient_email, e)
        return False


def generate_otp():
    return str(secrets.randbelow(900000) + 100000)


def issue_code(user, purpose):
    """Create a fresh one-time code for ``user`` (older codes are discarded) and mail it."""
    code = generate_otp()
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=current_app.config["OTP_EXPIRY_MINUTES"])
    replace_code(user["id"], purpose, code, expires_at.isoformat())

    if purpose == PURPOSE_RESET:
        send_password_reset_email(user["email"], code, user["name"])
    else:
        send_verification_email(user["email"], code, user["name"])
    return code


def verify_code(user_id, purpose, code):
    """Check a submitted code. Returns ``(valid, error_message)``.

    A wrong code counts against the attempt budget; the code is left in place
    on success so the caller decides when to consume it.
    """
    stored = get_active_code(user_id, purpose)
    if stored is None:
        return False, "Invalid code"

    if stored["attempts"] >= current_app.config["OTP_MAX_ATTEMPTS"]:
        return False, "Too many attempts. Please request a new code."

    if str(stored["code"]) != str(code).strip():
        increment_code_attempts(user_id, purpose)
        return False, "Invalid code"

    if datetime.now(timezone.utc) > parse_timestamp(stored["expires_at"]):
        return False, "Code has expired"

    return True, None


def consume_codes(user_id, purpose):
    delete_codes(user_id, purpose)


# Templates

def send_verification_email(email, code, name):
    subject = "Verify your Melodia account"
    body = f"""
    <h1>Welcome to Melodia, {name}!</h1>
    <p>Your verification code is: <strong>{code}</strong></p>
    <p>This code will expire in {current_app.config["OTP_EXPIRY_MINUTES"]} minutes.</p>
    <p>If you didn't request this, please ignore this email.</p>
    """
    return send_email(email, subject, body)


def send_password_reset_email(email, code, name):
    subject = "Reset your Melodia password"
    body = f"""
    <h1>Password Reset Request</h1>
    <p>Hi {name},</p>
    <p>Your password reset code is: <strong>{code}</strong></p>
    <p>This code will expire in {current_app.config["OTP_EXPIRY_MINUTES"]} minutes.</p>
    <p>If you didn't request this, please ignore this email.</p>
    """
    return send_email(email, subject, body)


def send_song_request_confirmation(email, requester_name, recipient_name, request_id):
    subject = "We received your song request"
    body = f"""
    <html>
      <body>
        <p>Hi {requester_name},</p>
        <p>Thanks for asking us to write a song for <b>{recipient_name}</b>.<br>
        Your request number is <b>#{request_id}</b>. We'll let you know as soon as the lyrics are ready.</p>
      </body>
    </html>
    """
    return send_email(email, subject, body)


def send_payment_confirmation(email, amount, currency, order_id):
    subject = "Payment received"
    body = f"""
    <html>
      <body>
        <p>We've received your payment of <b>{amount} {currency}</b>.</p>
        <p>Order reference: {order_id}</p>
      </body>
    </html>
    """
    return send_email(email, subject, body)
