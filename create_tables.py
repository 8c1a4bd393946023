"""
Create the tracking tables from SQLAlchemy models on a fresh database.
Existing tables are left as they are.
"""
from shiptrack.database import init_db

init_db()
print("Tracking tables created (or already exist).")
