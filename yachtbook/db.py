from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session


def session(engine: Engine) -> Session:
    # Callers read booking fields (and build outbound events from them) after
    # committing, so attributes must survive the commit.
    return Session(engine, expire_on_commit=False)
