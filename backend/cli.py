"""CLI tool for admin operations.

Usage:
    python -m backend.cli create-user [username]
    python -m backend.cli token <username>
"""

import sys

from sqlmodel import Session, select

from backend.database import engine, create_db_and_tables
from backend.engine.ledger import get_or_create_account
from backend.models.user import User
from backend.services.auth import create_access_token


def create_user(username: str | None = None):
    """Create a user with a funded paper account and print an access token."""
    create_db_and_tables()

    username = (username or input("Username: ")).strip()
    if not username:
        print("Username cannot be empty.")
        sys.exit(1)

    with Session(engine) as session:
        existing = session.exec(select(User).where(User.username == username)).first()
        if existing:
            print(f"User '{username}' already exists.")
            sys.exit(1)

        user = User(username=username)
        session.add(user)
        session.commit()
        session.refresh(user)
        account = get_or_create_account(session, user.id)
        cash = account.cash

    print(f"\nUser '{username}' created with ${cash:,.2f} paper cash.")
    print(f"\nAccess token:\n{create_access_token(username)}")


def issue_token(username: str):
    create_db_and_tables()
    with Session(engine) as session:
        user = session.exec(select(User).where(User.username == username)).first()
        if user is None or not user.is_active:
            print(f"User '{username}' not found or inactive.")
            sys.exit(1)
    print(create_access_token(username))


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m backend.cli <command>")
        print("Commands: create-user [username], token <username>")
        sys.exit(1)

    command = sys.argv[1]
    if command == "create-user":
        create_user(sys.argv[2] if len(sys.argv) > 2 else None)
    elif command == "token" and len(sys.argv) > 2:
        issue_token(sys.argv[2])
    else:
        print(f"Unknown command: {' '.join(sys.argv[1:])}")
        sys.exit(1)


if __name__ == "__main__":
    main()
