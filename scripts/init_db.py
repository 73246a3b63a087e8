"""
Database initialization script.
Creates all tables and seeds the beneficiary organizations.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from charity_ledger.models.base import Base
# CRITICAL: Import all models to register them
from charity_ledger.models.positions import Position
from charity_ledger.models.transactions import LedgerTransaction
from charity_ledger.models.organizations import BeneficiaryOrganization
from charity_ledger.models.allocations import AllocationRecord
from charity_ledger.models.orders import ConditionalOrder
from charity_ledger.models.accounts import AccountPreference
from charity_ledger.models.audit_log import AuditLog, TransparencyEntry
from config.settings import get_settings, get_seed_organizations

def init_database():
    """
    Initialize database with all tables.
    Steps:
    1. Create all tables from SQLAlchemy models
    2. Seed beneficiary organizations (skipped if any exist)
    """
    settings = get_settings()
    engine = create_engine(settings.DATABASE_URL)

    print("Charity Ledger - Database Initialization")
    print("=" * 50)

    # Step 1: Create all tables
    print("\n1. Creating all tables...")
    try:
        Base.metadata.create_all(bind=engine)
        print(f"  ✓ {len(Base.metadata.tables)} tables ready")
    except Exception as e:
        print(f"  ✗ Error creating tables: {e}")
        return

    # Step 2: Seed organizations
    print("\n2. Seeding beneficiary organizations...")
    db = sessionmaker(bind=engine)()
    try:
        if db.query(BeneficiaryOrganization).count() > 0:
            print("  ⚠ Organizations already present, skipping")
        else:
            for org in get_seed_organizations():
                db.add(BeneficiaryOrganization(**org))
            db.commit()
            print(f"  ✓ Seeded {len(get_seed_organizations())} organizations")
    finally:
        db.close()

    print("\n" + "=" * 50)
    print("✅ Database initialization complete!")
    print("\nNext steps:")
    print("1. Access API: http://localhost:8000")
    print("2. Start scheduler: celery -A charity_ledger.scheduler.celery_app worker -B")

if __name__ == "__main__":
    init_database()
