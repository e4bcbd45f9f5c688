from __future__ import annotations

from sqlalchemy.orm import Session

from logic_deploy.db.session import SessionLocal
from logic_deploy.models import Release, User
from logic_deploy.services.deployment_log import append_audit_log


LOCAL_USERS = (
    ("engineer@plant.local", "Controls Engineer", "engineer"),
    ("reviewer@plant.local", "Second Engineer", "engineer"),
    ("safety@plant.local", "Safety Officer", "safety_officer"),
    ("manager@plant.local", "Plant Manager", "plant_manager"),
)


def seed_users(db: Session) -> list[User]:
    users: list[User] = []
    for email, name, role in LOCAL_USERS:
        user = db.query(User).filter(User.email == email).first()
        if user is None:
            user = User(email=email, name=name, role=role)
            db.add(user)
            db.flush()
        users.append(user)
    return users


def seed_local_data() -> None:
    db = SessionLocal()
    try:
        existing = db.query(User).filter(User.email == LOCAL_USERS[0][0]).first()
        if existing:
            return

        users = seed_users(db)
        release = Release(
            project_id="line-1",
            version_id="v1.0.0",
            snapshot_id="snap-local-0001",
            created_by=users[0].id,
            metadata_json={"target_runtimes": ["plc-line1-a"], "source": "seed"},
        )
        db.add(release)
        db.flush()

        append_audit_log(
            db,
            actor_id=users[0].id,
            action="seed.local_data",
            release_id=release.id,
            payload={"users": [user.email for user in users]},
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_local_data()
