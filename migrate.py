# migrate.py
from config import settings
from database import init_db
from storage import init_local_store

if __name__ == "__main__":
    print("🚀 Running schema migration...")
    init_db(settings.get("ledger_db_path"))
    init_local_store(settings.get("local_store_path"))
    print("✅ Migration complete.")
