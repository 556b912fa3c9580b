from fastapi import Header, HTTPException


def get_current_user(authorization: str = Header(default="")) -> str:
    """Resolve the caller from the ``Authorization`` header.

    Token verification belongs to the platform's identity service; here the
    bearer token is taken as the caller id.
    """
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise HTTPException(status_code=401, detail="Unauthorized")
    user_id = authorization[len(prefix) :].strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id
