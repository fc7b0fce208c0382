import sys

from app.db.base import Base
from app.db import registry as _  # noqa: F401  # register models
from app.ledger.db import get_engine, tenant_database_url


def init(tenant_id: str = "default"):
    engine = get_engine(tenant_database_url(tenant_id))
    Base.metadata.create_all(bind=engine)
    print(f"Pipeline tables created tenant={tenant_id}")


if __name__ == "__main__":
    init(*sys.argv[1:2])
