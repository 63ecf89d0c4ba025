#!/usr/bin/env python3
"""
CarePath - Database Table Creation Script
Creates all scheduling-engine tables using SQLAlchemy ORM
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from carepath.config import settings
from carepath.database import get_engine, wait_for_database
from carepath.models import Base


def create_all_tables():
    """Create all database tables"""
    print("="*60)
    print("CarePath - Database Table Creation")
    print("="*60)

    db_url = settings.get_database_url()
    print(f"\nConnecting to database...")
    print(f"URL: {db_url.split('@')[1] if '@' in db_url else 'hidden'}")

    try:
        wait_for_database()

        print("\nCreating all tables...")
        Base.metadata.create_all(get_engine())

        print("\n" + "="*60)
        print("✓ All tables created successfully!")
        print("="*60)

        print("\nTables created:")
        for table in Base.metadata.sorted_tables:
            print(f"  - {table.name}")

        return 0

    except Exception as e:
        print(f"\n✗ Error creating tables: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(create_all_tables())
