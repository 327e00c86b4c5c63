"""Session tokens: access and refresh JWTs for a repo's account.

https://atproto.com/specs/xrpc#authentication

Tokens are ES256K (K-256) JWTs signed with the PDS's JWT key. The audience is
the PDS's service DID, ``did:web:[PDS_HOST]`` by default.
"""
from collections import namedtuple
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
import os
import secrets

import jwt
from jwt import algorithms

from . import util

logger = logging.getLogger(__name__)

ACCESS_EXPIRATION = timedelta(hours=2)
REFRESH_EXPIRATION = timedelta(days=90)

# pyjwt doesn't produce low-S secp256k1 ECDSA signatures, which atproto requires.
# https://atproto.com/specs/cryptography#ecdsa-signature-malleability
# From picopds, thank you David! https://github.com/DavidBuchanan314/picopds
_orig_der_to_raw_signature = algorithms.der_to_raw_signature


def _low_s_der_to_raw_signature(der_sig, curve):
    return _orig_der_to_raw_signature(util.apply_low_s_mitigation(der_sig, curve),
                                      curve)


algorithms.der_to_raw_signature = _low_s_der_to_raw_signature


class Scope(Enum):
    ACCESS = 'com.atproto.access'
    REFRESH = 'com.atproto.refresh'
    APP_PASS = 'com.atproto.appPass'
    APP_PASS_PRIVILEGED = 'com.atproto.appPassPrivileged'


Token = namedtuple('Token', [
    'scope',  # Scope
    'sub',    # str, account DID
    'exp',    # datetime
    'jti',    # str, token id, or None for access tokens
], defaults=[None])


class InvalidToken(ValueError):
    """Raised when a token is valid but not the kind that was expected."""
    pass


def service_did():
    """Returns this PDS's service DID, based on the ``PDS_HOST`` env var.

    Returns:
      str:
    """
    return f'did:web:{os.environ["PDS_HOST"]}'


def _encode(claims, key):
    now = util.now()
    claims = {
        'iat': int(now.timestamp()),
        **claims,
        'exp': int((now + claims['exp']).timestamp()),
    }
    logger.info(f'Issuing {claims["scope"]} token for {claims["sub"]}')
    return jwt.encode(claims, key, algorithm='ES256K')


def create_access_token(did, key, *, aud=None, scope=Scope.ACCESS,
                        expiration=ACCESS_EXPIRATION):
    """Generates an access token.

    Args:
      did (str): account DID, used as the subject
      key (ec.EllipticCurvePrivateKey): JWT signing key
      aud (str): audience, defaults to :func:`service_did`
      scope (Scope)
      expiration (timedelta)

    Returns:
      str: JWT
    """
    assert did
    return _encode({
        'scope': scope.value,
        'sub': did,
        'aud': aud or service_did(),
        'exp': expiration,
    }, key)


def create_refresh_token(did, key, *, aud=None, jti=None,
                         expiration=REFRESH_EXPIRATION):
    """Generates a refresh token.

    Args:
      did (str): account DID, used as the subject
      key (ec.EllipticCurvePrivateKey): JWT signing key
      aud (str): audience, defaults to :func:`service_did`
      jti (str): token id, defaults to a new random string
      expiration (timedelta)

    Returns:
      str: JWT
    """
    assert did
    return _encode({
        'scope': Scope.REFRESH.value,
        'sub': did,
        'aud': aud or service_did(),
        'jti': jti or secrets.token_urlsafe(24),
        'exp': expiration,
    }, key)


def create_tokens(did, key, *, aud=None, scope=Scope.ACCESS, jti=None):
    """Generates an access token and a refresh token for a new session.

    Args:
      did (str): account DID
      key (ec.EllipticCurvePrivateKey): JWT signing key
      aud (str): audience, defaults to :func:`service_did`
      scope (Scope): access token scope
      jti (str): refresh token id

    Returns:
      (str, str) tuple: access JWT, refresh JWT
    """
    return (create_access_token(did, key, aud=aud, scope=scope),
            create_refresh_token(did, key, aud=aud, jti=jti))


def decode_token(token, key, *, aud=None):
    """Verifies and decodes a token generated by this module.

    Args:
      token (str): JWT
      key (ec.EllipticCurvePrivateKey or ec.EllipticCurvePublicKey)
      aud (str): expected audience, defaults to :func:`service_did`

    Returns:
      Token:

    Raises:
      jwt.InvalidTokenError: if the signature, audience, or claims are invalid,
        or it has expired
    """
    # check expiration ourselves so that it uses util.now
    claims = jwt.decode(token, key, algorithms=['ES256K'],
                        audience=aud or service_did(),
                        options={'verify_exp': False,
                                 'require': ['exp', 'scope', 'sub']})

    exp = datetime.fromtimestamp(claims['exp'], timezone.utc)
    if exp <= util.now():
        raise jwt.ExpiredSignatureError('Signature has expired')

    try:
        scope = Scope(claims['scope'])
    except ValueError as e:
        raise jwt.InvalidTokenError(f'Unknown scope {claims["scope"]}') from e

    return Token(scope=scope, sub=claims['sub'], exp=exp, jti=claims.get('jti'))


def decode_refresh_token(token, key, *, aud=None):
    """Verifies and decodes a refresh token.

    Args:
      token (str): JWT
      key (ec.EllipticCurvePrivateKey or ec.EllipticCurvePublicKey)
      aud (str): expected audience, defaults to :func:`service_did`

    Returns:
      Token:

    Raises:
      InvalidToken: if it's not a refresh token
      jwt.InvalidTokenError
    """
    decoded = decode_token(token, key, aud=aud)
    if decoded.scope != Scope.REFRESH or not decoded.jti:
        raise InvalidToken(f'Not a refresh token: {decoded.scope.value}')
    return decoded
