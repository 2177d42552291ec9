import collections
import contextlib
import logging
import os
import sqlite3
import time

logger = logging.getLogger(__name__)

database = os.environ.get('JWKS_DATABASE', 'totally_not_my_privateKeys.db')

# Seconds a writer waits on the database lock before giving up
busy_timeout = 10

SigningKey = collections.namedtuple('SigningKey', ['kid', 'key', 'exp'])


# Opens a connection for a single operation and always closes it
@contextlib.contextmanager
def connect():
    conn = sqlite3.connect(database, timeout=busy_timeout)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


# Initializes the database for the keys
def init_db():
    with connect() as conn:
        conn.execute('PRAGMA journal_mode=WAL')
        conn.execute('''
            CREATE TABLE IF NOT EXISTS keys (
                kid INTEGER PRIMARY KEY AUTOINCREMENT,
                key BLOB NOT NULL,
                exp INTEGER NOT NULL
            )
        ''')


# Stores a private key and returns the kid assigned to it
def insert_key(key, exp):
    with connect() as conn:
        cursor = conn.execute('INSERT INTO keys (key, exp) VALUES (?, ?)', (key, int(exp)))
        kid = cursor.lastrowid

    logger.debug("Stored key %s expiring at %s", kid, exp)
    return kid


# Soonest-to-expire valid key, or most recently expired key; ties go to the
# smaller kid. None when nothing matches
def fetch_key(expired=False, now=None):
    if now is None:
        now = int(time.time())

    if expired:
        sql = 'SELECT kid, key, exp FROM keys WHERE exp <= ? ORDER BY exp DESC, kid ASC LIMIT 1'
    else:
        sql = 'SELECT kid, key, exp FROM keys WHERE exp > ? ORDER BY exp ASC, kid ASC LIMIT 1'

    with connect() as conn:
        row = conn.execute(sql, (now,)).fetchone()

    if row is None:
        return None
    return SigningKey(*row)


# Every key that has not expired yet, oldest kid first
def fetch_all_valid_keys(now=None):
    if now is None:
        now = int(time.time())

    with connect() as conn:
        rows = conn.execute('SELECT kid, key, exp FROM keys WHERE exp > ? ORDER BY kid ASC', (now,)).fetchall()

    return [SigningKey(*row) for row in rows]
