"""
MySQL Storage for the SecureChat Relay

Stores user presence and ciphertext envelopes.
NEVER stores plaintext messages or keys: the relay cannot decrypt anything.
"""

import os
import mysql.connector
from datetime import datetime
from typing import List, Optional
from dotenv import load_dotenv
from securechat.common.exceptions import DatabaseError
from securechat.common.protocol import CipherEnvelope

# Load environment variables
load_dotenv()


def get_db_connection():
    """
    Create and return a MySQL database connection.

    Returns:
        MySQL connection object

    Raises:
        DatabaseError: If connection fails
    """
    try:
        conn = mysql.connector.connect(
            host=os.getenv('DB_HOST', 'localhost'),
            port=int(os.getenv('DB_PORT', 3306)),
            database=os.getenv('DB_NAME', 'securechat'),
            user=os.getenv('DB_USER', 'scuser'),
            password=os.getenv('DB_PASSWORD', 'scpass'),
        )
        return conn
    except mysql.connector.Error as e:
        raise DatabaseError(f"Database connection failed: {e}")


def init_db():
    """
    Initialize database schema.
    Creates the users and messages tables if they don't exist.
    """
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INT AUTO_INCREMENT PRIMARY KEY,
                username VARCHAR(255) UNIQUE NOT NULL,
                is_online BOOLEAN NOT NULL DEFAULT FALSE,
                connection_id VARCHAR(64) NULL,
                last_login_at DATETIME NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                INDEX idx_online (is_online)
            ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INT AUTO_INCREMENT PRIMARY KEY,
                message_id VARCHAR(64) UNIQUE NOT NULL,
                sender VARCHAR(255) NOT NULL,
                recipient VARCHAR(255) NOT NULL,
                ciphertext MEDIUMTEXT NOT NULL,
                iv VARCHAR(64) NOT NULL,
                ts BIGINT NOT NULL,
                is_delivered BOOLEAN NOT NULL DEFAULT FALSE,
                delivered_at DATETIME NULL,
                INDEX idx_recipient_delivered (recipient, is_delivered),
                INDEX idx_conversation (sender, recipient, ts)
            ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
        """)

        conn.commit()
        print("[✓] Database initialized successfully")

    except mysql.connector.Error as e:
        raise DatabaseError(f"Database initialization failed: {e}")

    finally:
        if conn:
            conn.close()


# ----------------------------------------------------------------------
# Users / presence
# ----------------------------------------------------------------------

def set_user_online(username: str, connection_id: str):
    """
    Create the user on first join, or mark an existing user online.

    Args:
        username: Username
        connection_id: Relay connection identifier
    """
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.cursor()

        cursor.execute(
            "INSERT INTO users (username, is_online, connection_id, last_login_at) "
            "VALUES (%s, TRUE, %s, %s) "
            "ON DUPLICATE KEY UPDATE is_online = TRUE, connection_id = VALUES(connection_id), "
            "last_login_at = VALUES(last_login_at)",
            (username, connection_id, datetime.utcnow())
        )

        conn.commit()

    except mysql.connector.Error as e:
        raise DatabaseError(f"Presence update failed: {e}")

    finally:
        if conn:
            conn.close()


def set_user_offline(username: str):
    """Mark a user offline and clear its connection id."""
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.cursor()

        cursor.execute(
            "UPDATE users SET is_online = FALSE, connection_id = NULL WHERE username = %s",
            (username,)
        )

        conn.commit()

    except mysql.connector.Error as e:
        raise DatabaseError(f"Presence update failed: {e}")

    finally:
        if conn:
            conn.close()


def get_online_usernames() -> List[str]:
    """
    List users currently marked online.

    Returns:
        Usernames in alphabetical order
    """
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.cursor()

        cursor.execute("SELECT username FROM users WHERE is_online = TRUE ORDER BY username")
        return [row[0] for row in cursor.fetchall()]

    except mysql.connector.Error as e:
        raise DatabaseError(f"Online user lookup failed: {e}")

    finally:
        if conn:
            conn.close()


def is_username_taken(username: str) -> bool:
    """
    Check whether a username is in use by an online user.

    Returns:
        True if an online user holds the name
    """
    if not username:
        raise ValueError("Must provide a username")

    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.cursor()

        cursor.execute(
            "SELECT 1 FROM users WHERE username = %s AND is_online = TRUE",
            (username,)
        )
        return cursor.fetchone() is not None

    except mysql.connector.Error as e:
        raise DatabaseError(f"User lookup failed: {e}")

    finally:
        if conn:
            conn.close()


# ----------------------------------------------------------------------
# Ciphertext envelopes
# ----------------------------------------------------------------------

_MESSAGE_COLUMNS = "message_id, sender, recipient, ciphertext, iv, ts"


def _row_to_envelope(row) -> CipherEnvelope:
    message_id, sender, recipient, ciphertext, iv, ts = row
    return CipherEnvelope(
        message_id=message_id,
        sender_id=sender,
        recipient_id=recipient,
        ciphertext=ciphertext,
        iv=iv,
        timestamp=ts,
    )


def save_message(envelope: CipherEnvelope):
    """
    Store a ciphertext envelope as undelivered.

    Args:
        envelope: Envelope exactly as relayed

    Raises:
        DatabaseError: If the message id already exists or database error occurs
    """
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.cursor()

        cursor.execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s)",
            (
                envelope.message_id,
                envelope.sender_id,
                envelope.recipient_id,
                envelope.ciphertext,
                envelope.iv,
                envelope.timestamp,
            )
        )

        conn.commit()

    except mysql.connector.IntegrityError:
        raise DatabaseError(f"Message {envelope.message_id} already stored")

    except mysql.connector.Error as e:
        raise DatabaseError(f"Saving message failed: {e}")

    finally:
        if conn:
            conn.close()


def mark_delivered(message_id: str):
    """Flag a stored envelope as delivered. Unknown ids are ignored."""
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.cursor()

        cursor.execute(
            "UPDATE messages SET is_delivered = TRUE, delivered_at = %s WHERE message_id = %s",
            (datetime.utcnow(), message_id)
        )

        conn.commit()

    except mysql.connector.Error as e:
        raise DatabaseError(f"Marking message delivered failed: {e}")

    finally:
        if conn:
            conn.close()


def get_undelivered_messages(recipient: str) -> List[CipherEnvelope]:
    """
    Envelopes waiting for a recipient, oldest first.

    Args:
        recipient: Recipient username
    """
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.cursor()

        cursor.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE recipient = %s AND is_delivered = FALSE ORDER BY ts",
            (recipient,)
        )
        return [_row_to_envelope(row) for row in cursor.fetchall()]

    except mysql.connector.Error as e:
        raise DatabaseError(f"Undelivered message lookup failed: {e}")

    finally:
        if conn:
            conn.close()


def get_message_history(user1: str, user2: str, take: int = 50, skip: int = 0) -> List[CipherEnvelope]:
    """
    Page through the conversation between two users, newest first.

    Args:
        user1: One participant
        user2: The other participant
        take: Page size
        skip: Number of newest envelopes to skip
    """
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.cursor()

        cursor.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE (sender = %s AND recipient = %s) OR (sender = %s AND recipient = %s) "
            "ORDER BY ts DESC LIMIT %s OFFSET %s",
            (user1, user2, user2, user1, take, skip)
        )
        return [_row_to_envelope(row) for row in cursor.fetchall()]

    except mysql.connector.Error as e:
        raise DatabaseError(f"History lookup failed: {e}")

    finally:
        if conn:
            conn.close()


def get_message(message_id: str) -> Optional[CipherEnvelope]:
    """Look up one stored envelope by id."""
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.cursor()

        cursor.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id = %s",
            (message_id,)
        )
        row = cursor.fetchone()
        return _row_to_envelope(row) if row else None

    except mysql.connector.Error as e:
        raise DatabaseError(f"Message lookup failed: {e}")

    finally:
        if conn:
            conn.close()


# CLI for database management
if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Database management for the SecureChat relay")
    parser.add_argument("--init", action="store_true", help="Initialize database schema")
    parser.add_argument("--online", action="store_true", help="List online users")
    parser.add_argument("--pending", metavar="USER", help="Count undelivered messages for USER")

    args = parser.parse_args()

    if args.init:
        print("[*] Initializing database...")
        init_db()

    elif args.online:
        try:
            users = get_online_usernames()
            print(f"[✓] Online users: {', '.join(users) if users else '(none)'}")
        except DatabaseError as e:
            print(f"[✗] Lookup failed: {e}")

    elif args.pending:
        try:
            pending = get_undelivered_messages(args.pending)
            print(f"[✓] {len(pending)} undelivered message(s) for {args.pending}")
        except DatabaseError as e:
            print(f"[✗] Lookup failed: {e}")

    else:
        parser.print_help()
