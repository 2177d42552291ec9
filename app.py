from flask import Flask, jsonify, request
from jwcrypto import jwk, jwt
from jwcrypto.common import JWException
import logging
import os
import sqlite3
import time

import db

app = Flask(__name__)
logger = logging.getLogger(__name__)

host = os.environ.get('JWKS_HOST', '127.0.0.1')
port = int(os.environ.get('JWKS_PORT', '8080'))
log_level = os.environ.get('JWKS_LOG_LEVEL', 'INFO')

# Lifetime of provisioned keys and offset of the exp claim, in seconds
KEY_LIFETIME = 3600

# Placeholder claims carried by every token
SUBJECT = "1234567890"
NAME = "John Doe"
ISSUED_AT = 1516239022


class NoKeyAvailable(RuntimeError):
    pass


class MalformedKey(ValueError):
    pass


# Generates an RSA key
def generate_key():
    key = jwk.JWK.generate(kty='RSA', size=2048)
    return key


# Serializes a private key to unencrypted PEM for storage
def serialize_key(private_key):
    return private_key.export_to_pem(private_key=True, password=None)


# Loads a stored private key
def load_key(signing_key):
    try:
        private_key = jwk.JWK.from_pem(bytes(signing_key.key))
    except (ValueError, TypeError, JWException) as e:
        raise MalformedKey(f"Stored key {signing_key.kid} could not be loaded: {e}") from e

    if private_key.get('kty') != 'RSA' or not private_key.has_private:
        raise MalformedKey(f"Stored key {signing_key.kid} is not an RSA private key")
    return private_key


# Makes sure there is a valid and an expired key; each check is independent.
# Returns the kids of the inserted keys
def ensure_keys(now=None):
    if now is None:
        now = int(time.time())

    inserted = []
    if db.fetch_key(expired=False, now=now) is None:
        kid = db.insert_key(serialize_key(generate_key()), now + KEY_LIFETIME)
        logger.info("Provisioned valid key %s", kid)
        inserted.append(kid)

    if db.fetch_key(expired=True, now=now) is None:
        kid = db.insert_key(serialize_key(generate_key()), now - KEY_LIFETIME)
        logger.info("Provisioned expired key %s", kid)
        inserted.append(kid)

    return inserted


# Generates the JWT, signed with a valid or an expired key
def generate_jwt(expired=False):
    signing_key = db.fetch_key(expired=expired)
    if signing_key is None:
        raise NoKeyAvailable(f"No {'expired' if expired else 'valid'} key in the database")

    private_key = load_key(signing_key)
    now = int(time.time())
    payload = {
        "sub": SUBJECT,
        "name": NAME,
        "iat": ISSUED_AT,
        "exp": now - KEY_LIFETIME if expired else now + KEY_LIFETIME
    }

    token = jwt.JWT(header={"alg": "RS256", "typ": "JWT", "kid": str(signing_key.kid)}, claims=payload)
    token.make_signed_token(private_key)
    return token.serialize()


# Public JWK for every key that has not expired
def build_jwks(now=None):
    keys = []

    for signing_key in db.fetch_all_valid_keys(now=now):
        public = load_key(signing_key).export_public(as_dict=True)
        keys.append({
            "kty": "RSA",
            "kid": str(signing_key.kid),
            "use": "sig",
            "n": public['n'],
            "e": public['e'],
            "alg": "RS256"
        })

    return {"keys": keys}


# Handles the jwks keys
@app.route('/.well-known/jwks.json', methods=['GET'], provide_automatic_options=False)
def jwks():
    return jsonify(build_jwks())


# Issues a token; any ?expired parameter selects the expired key
@app.route('/auth', methods=['POST'], provide_automatic_options=False)
def authenticate():
    token = generate_jwt(expired='expired' in request.args)
    return app.response_class(token, status=200, mimetype='text/plain')


@app.errorhandler(NoKeyAvailable)
@app.errorhandler(MalformedKey)
def handle_key_error(e):
    logger.error("Request failed: %s", e, exc_info=e)
    return jsonify({"message": str(e)}), 500


@app.errorhandler(sqlite3.Error)
def handle_database_error(e):
    logger.error("Database error: %s", e, exc_info=e)
    return jsonify({"message": "Key store unavailable"}), 500


def main():
    logging.basicConfig(
        level=log_level.upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # Keys must exist before the first request is served
    db.init_db()
    ensure_keys()

    logger.info("Serving on %s:%s", host, port)
    app.run(host=host, port=port, threaded=True)


if __name__ == '__main__':
    main()
