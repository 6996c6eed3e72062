import sqlite3
import uuid

import bcrypt

from database import get_db, utcnow


def hash_password(password):
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def public_user(user):
    if user is None:
        return None
    return {
        "id": user["id"],
        "name": user["name"],
        "email": user["email"],
        "emailVerified": bool(user["email_verified"]),
        "createdAt": user["created_at"],
    }


# Register a new (unverified) user. Returns the new row, or None if the email is taken.
def register_user(name, email, password):
    db = get_db()
    now = utcnow()
    try:
        cursor = db.execute(
            """INSERT INTO users (name, email, password_hash, email_verified, created_at, updated_at)
               VALUES (?, ?, ?, 0, ?, ?)""",
            (name, email.lower(), hash_password(password), now, now),
        )
        db.commit()
    except sqlite3.IntegrityError:
        return None
    return get_user_by_id(cursor.lastrowid)


# Login user and check password
def login_user(email, password):
    user = get_user_by_email(email)
    if user is None:
        return "User not found", None
    if not bcrypt.checkpw(password.encode(), user["password_hash"].encode()):
        return "Incorrect password", None
    if not user["email_verified"]:
        return "Email not verified", user
    return "Login successful", user


def get_user_by_email(email):
    if not email:
        return None
    return get_db().execute("SELECT * FROM users WHERE email = ?", (email.lower(),)).fetchone()


def get_user_by_id(user_id):
    return get_db().execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()


def mark_email_verified(user_id):
    db = get_db()
    db.execute(
        "UPDATE users SET email_verified = 1, updated_at = ? WHERE id = ?",
        (utcnow(), user_id),
    )
    db.commit()


def update_password(user_id, password):
    db = get_db()
    db.execute(
        "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
        (hash_password(password), utcnow(), user_id),
    )
    db.commit()


# Verification codes

def replace_code(user_id, purpose, code, expires_at):
    db = get_db()
    db.execute("DELETE FROM verification_codes WHERE user_id = ? AND purpose = ?", (user_id, purpose))
    db.execute(
        """INSERT INTO verification_codes (user_id, purpose, code, expires_at, attempts, created_at)
           VALUES (?, ?, ?, ?, 0, ?)""",
        (user_id, purpose, code, expires_at, utcnow()),
    )
    db.commit()


def get_active_code(user_id, purpose):
    return get_db().execute(
        """SELECT * FROM verification_codes WHERE user_id = ? AND purpose = ?
           ORDER BY id DESC LIMIT 1""",
        (user_id, purpose),
    ).fetchone()


def increment_code_attempts(user_id, purpose):
    db = get_db()
    db.execute(
        "UPDATE verification_codes SET attempts = attempts + 1 WHERE user_id = ? AND purpose = ?",
        (user_id, purpose),
    )
    db.commit()


def delete_codes(user_id, purpose):
    db = get_db()
    db.execute("DELETE FROM verification_codes WHERE user_id = ? AND purpose = ?", (user_id, purpose))
    db.commit()


# Anonymous sessions

def create_anonymous_user():
    anonymous_id = str(uuid.uuid4())
    db = get_db()
    db.execute("INSERT INTO anonymous_users (id, created_at) VALUES (?, ?)", (anonymous_id, utcnow()))
    db.commit()
    return anonymous_id


def anonymous_user_exists(anonymous_id):
    if not anonymous_id:
        return False
    row = get_db().execute("SELECT id FROM anonymous_users WHERE id = ?", (anonymous_id,)).fetchone()
    return row is not None
