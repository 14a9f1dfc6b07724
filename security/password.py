import bcrypt

BCRYPT_ROUNDS = 12

def hash_password(plain_password: str) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")

    # bcrypt expects bytes
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    hashed = bcrypt.hashpw(plain_password.encode("utf-8"), salt)
    return hashed.decode("utf-8")

# verified against when the account does not exist, so unknown and known
# emails cost the same bcrypt work
_DUMMY_HASH = hash_password("account-does-not-exist")

def verify_password(plain_password: str, password_hash: str) -> bool:
    if not plain_password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"),
            password_hash.encode("utf-8")
        )
    except ValueError:
        # malformed stored hash
        return False

def burn_verify_time(plain_password: str) -> None:
    verify_password(plain_password or "x", _DUMMY_HASH)
