from datetime import date, timedelta

from sqlalchemy.orm import Session

from core.roles import Role
from core.security import hash_password
from data.db import engine
from data.models import Base, Project, ProjectMember, Sprint, Usuario


TEAM = [
    {"username": "facilitator", "email": "facilitator@example.com", "display_name": "Facilitator", "role": Role.SCRUM_MASTER},
    {"username": "dev", "email": "dev@example.com", "display_name": None, "role": Role.DEVELOPER},
    {"username": "owner", "email": "owner@example.com", "display_name": "Product Owner", "role": Role.PRODUCT_OWNER},
]


if __name__ == "__main__":
    Base.metadata.create_all(bind=engine)
    with Session(engine) as db:
        project = Project(name="Demo project", description="Seeded for local retrospectives")
        db.add(project)
        db.flush()
        for entry in TEAM:
            user = Usuario(
                username=entry["username"],
                email=entry["email"],
                password_hash=hash_password("secret"),
                activo=True,
            )
            db.add(user)
            db.flush()
            db.add(
                ProjectMember(
                    project_id=project.id,
                    usuario_id=user.id,
                    display_name=entry["display_name"],
                    role=entry["role"].value,
                )
            )
        start = date.today()
        db.add(
            Sprint(
                project_id=project.id,
                name="Sprint 1",
                start_date=start,
                end_date=start + timedelta(days=13),
                status="In Progress",
            )
        )
        db.commit()
    print("Seed completed")
