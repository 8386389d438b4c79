"""
Script to recreate the control-plane schema (development only)
"""
import sys

from app.core.config import settings
from app.core.database import build_engine
from app.models import Base


def recreate_db():
    if settings.env == "prod":
        print("Refusing to drop the control plane with ENV=prod")
        sys.exit(1)

    print("Recreating control-plane database...")
    engine = build_engine(settings.database_url)

    print("Dropping existing tables...")
    Base.metadata.drop_all(bind=engine)

    print("Creating tables...")
    Base.metadata.create_all(bind=engine)
    engine.dispose()

    print("Database recreated successfully!")


if __name__ == "__main__":
    recreate_db()
