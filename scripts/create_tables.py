"""
Create warehouse, audit and rollup tables
"""
from commercehub.core import engine, Base
from commercehub.core.config import settings
import commercehub.models  # noqa: F401  registers models on Base


def main():
    print(f"Creating tables on {settings.DATABASE_URL.split('@')[-1]}")
    Base.metadata.create_all(bind=engine)
    for table in sorted(Base.metadata.tables):
        print(f"  [OK] {table}")


if __name__ == "__main__":
    main()
