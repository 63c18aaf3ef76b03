import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import User


@pytest.fixture
def session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


def make_user(session: Session, name: str = "Alice") -> User:
    user = User(
        name=name, email=f"{name.lower()}@example.com", password_hash="not-a-hash"
    )
    session.add(user)
    session.commit()
    return user
