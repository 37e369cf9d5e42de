#!/usr/bin/env python3
"""
Mint a short-lived operator token for the reconciliation endpoints
Usage:
  python3 mint_operator_token.py <operator_name>

Example:
  curl -H "Authorization: Bearer $(python3 mint_operator_token.py alice)" localhost:8000/admin/reconciliation
"""

import sys
from common.security import mint_operator_jwt
from common.settings import settings

def main(argv):
    if len(argv) != 2:
        print(__doc__, file=sys.stderr)
        return 1
    token = mint_operator_jwt(argv[1], {"role": "reconciliation"})
    print(token)
    print(f"valid for {settings.operator_jwt_ttl_seconds}s", file=sys.stderr)
    return 0

if __name__ == "__main__":
    sys.exit(main(sys.argv))
