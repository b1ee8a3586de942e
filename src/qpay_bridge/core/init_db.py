"""Initialize the database tables."""

from qpay_bridge.core import models  # noqa: F401  registers the tables
from qpay_bridge.core.database import Base, engine

print("Creating payment tables...")
Base.metadata.create_all(bind=engine)
print("Tables created successfully!")
