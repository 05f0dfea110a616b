from outreachhq.database import SessionLocal, engine, Base
from outreachhq.models import QueuedMessage, Recipient, Template

# Create tables
Base.metadata.create_all(bind=engine)

db = SessionLocal()

# Clear existing data
db.query(QueuedMessage).delete()
db.query(Recipient).delete()
db.query(Template).delete()

# Sample donors
recipients = [
    Recipient(
        first_name="Maria",
        last_name="Alvarez",
        email="maria.alvarez@example.org",
        notes="Monthly donor since 2019. Volunteers at the spring fair.",
        attributes={"giving_tier": "sustainer", "last_gift": "2024-11-02", "interests": ["youth programs"]},
    ),
    Recipient(
        first_name="James",
        last_name="Okafor",
        email="j.okafor@example.org",
        notes="Attended the 2024 gala with his family.",
        attributes={"giving_tier": "major", "last_gift": "2024-06-15", "salutation": "Dr. Okafor"},
    ),
    Recipient(
        first_name="Priya",
        last_name="Natarajan",
        email="priya.n@example.org",
        attributes={"giving_tier": "first_time", "last_gift": "2025-01-20"},
    ),
    Recipient(
        first_name="Tom",
        email="tom@example.org",
        notes="Prefers short emails.",
    ),
]

# Sample templates
templates = [
    Template(
        name="Year-end thank you",
        content="Thank the donor for their support this year and mention one concrete outcome it funded.",
        category="thank_you",
    ),
    Template(
        name="Spring appeal",
        content="Invite the donor to give to the spring campaign. Keep it under 150 words.",
        category="appeal",
    ),
    Template(
        name="Event invitation",
        content="Invite the donor to the annual gala and include the date and RSVP link placeholder.",
        category="event",
    ),
]

db.add_all(recipients)
db.add_all(templates)
db.commit()

print(f"Seeded {len(recipients)} recipients and {len(templates)} templates")
db.close()
