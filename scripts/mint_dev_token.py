#!/usr/bin/env python
"""Mint an access token for the local API.

Signs an HS256 token with the local jwtSecret so the API can be exercised
with curl against uvicorn running in SERENYA_ENV=local.

Constraints:
- Refuses to run in staging or prod (SERENYA_ENV check)
- Never touches Secrets Manager

Usage:
    cd python && SERENYA_ENV=local DATABASE_URL=sqlite:// python ../scripts/mint_dev_token.py [user_id]
"""

import os
import sys
import time
from uuid import uuid4


def main():
    serenya_env = os.getenv("SERENYA_ENV", "local")
    if serenya_env not in ("local", "test"):
        print(f"ERROR: mint_dev_token.py refuses to run in SERENYA_ENV={serenya_env}")
        sys.exit(1)

    import jwt

    from serenya.config import get_settings
    from serenya.services.providers import LOCAL_JWT_SECRET

    settings = get_settings()
    user_id = sys.argv[1] if len(sys.argv) > 1 else str(uuid4())
    now = int(time.time())
    token = jwt.encode(
        {
            "sub": user_id,
            "iss": settings.jwt_issuer,
            "aud": settings.jwt_audience,
            "iat": now,
            "exp": now + 3600,
        },
        LOCAL_JWT_SECRET,
        algorithm="HS256",
    )
    print(f"user_id: {user_id}")
    print(f"Authorization: Bearer {token}")


if __name__ == "__main__":
    main()
