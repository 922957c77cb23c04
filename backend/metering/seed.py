"""Seed the database with tier credits and the default credit pack catalog."""

from sqlalchemy import select

from metering.core.database import SessionLocal
from metering.models import CreditPack
from metering.services.credits.balance import seed_tier_credits

SEED_PACKS = [
    {"name": "Starter", "credits": 100, "price_cents": 1000, "display_order": 1},
    {"name": "Growth", "credits": 250, "price_cents": 2000, "display_order": 2},
    {"name": "Pro", "credits": 500, "price_cents": 3500, "display_order": 3},
    {"name": "Agency", "credits": 1000, "price_cents": 6000, "display_order": 4},
]


def seed_credit_packs() -> list[CreditPack]:
    """Insert packs that are not in the catalog yet. Returns created packs."""
    db = SessionLocal()
    created: list[CreditPack] = []
    try:
        existing = set(db.execute(select(CreditPack.name)).scalars().all())
        for data in SEED_PACKS:
            if data["name"] in existing:
                continue
            pack = CreditPack(**data)
            db.add(pack)
            created.append(pack)

        db.commit()
        for p in created:
            db.refresh(p)
        return created
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def seed_tiers() -> int:
    db = SessionLocal()
    try:
        return seed_tier_credits(db)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    tiers = seed_tiers()
    print(f"Seeded {tiers} tiers.")
    packs = seed_credit_packs()
    for p in packs:
        print(f"Created: {p.name} (id={p.id}, credits={p.credits})")
    print(f"\nSeeded {len(packs)} credit packs.")
