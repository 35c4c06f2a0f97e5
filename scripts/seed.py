# scripts/seed.py

import os
import sys
import argparse

from dotenv import load_dotenv
from sqlmodel import Session, select

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import engine, create_db_and_tables
from core.security import hash_password
from models.models import AdminUser, Organization, Donor, Package

# ✅ Load environment variables
load_dotenv()


def seed_dev_data():
    """Seed development database with an admin, one organization, a donor and a package."""
    print("🌱 Seeding development data...")
    create_db_and_tables()

    with Session(engine) as session:
        # -----------------------------
        # 👑 Admin
        # -----------------------------
        admin = session.exec(select(AdminUser).where(AdminUser.email == "admin@donorhub.dev")).first()
        if not admin:
            session.add(AdminUser(
                name="Platform Admin",
                email="admin@donorhub.dev",
                password_hash=hash_password("admin123"),
            ))
            session.commit()
            print("✅ Added Admin User")

        # -----------------------------
        # 🏢 Organization
        # -----------------------------
        org = session.exec(select(Organization).where(Organization.email == "hello@demo-charity.org")).first()
        if not org:
            org = Organization(
                name="Demo Charity",
                email="hello@demo-charity.org",
                password_hash=hash_password("charity123"),
                city="Lahore",
                country="Pakistan",
            )
            session.add(org)
            session.commit()
            session.refresh(org)
            print("✅ Created Demo Charity")

        # -----------------------------
        # 📦 Monthly package
        # -----------------------------
        package = session.exec(
            select(Package).where(Package.organization_id == org.id, Package.name == "Monthly Supporter")
        ).first()
        if not package:
            session.add(Package(
                name="Monthly Supporter",
                description="Recurring monthly donation",
                price=25.0,
                currency="USD",
                interval="month",
                organization_id=org.id,
            ))
            session.commit()
            print("✅ Added Monthly Supporter package")

        # -----------------------------
        # 🙋 Donor
        # -----------------------------
        donor = session.exec(select(Donor).where(Donor.email == "donor@demo.com")).first()
        if not donor:
            session.add(Donor(
                name="Demo Donor",
                email="donor@demo.com",
                password_hash=hash_password("donor123"),
            ))
            session.commit()
            print("✅ Added Demo Donor")

    print("🎉 Development data seeded successfully!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the DonorHub database")
    parser.add_argument("--env", default="dev", choices=["dev"], help="Which data set to seed")
    args = parser.parse_args()

    if args.env == "dev":
        seed_dev_data()
