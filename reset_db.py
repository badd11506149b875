from app import create_app, ensure_admin_user
from models import db, User, Course, Quiz, Enrollment, Certificate, AuditLog


def purge_data(app):
    deleted = {}
    with app.app_context():
        deleted["Certificate"] = Certificate.query.delete()
        deleted["Enrollment"] = Enrollment.query.delete()
        deleted["Quiz"] = Quiz.query.delete()
        deleted["Course"] = Course.query.delete()
        deleted["AuditLog"] = AuditLog.query.delete()
        deleted["User"] = User.query.delete()
        db.session.commit()
    return deleted


def drop_and_recreate(app):
    with app.app_context():
        db.drop_all()
        db.create_all()


def seed_defaults(app):
    with app.app_context():
        ensure_admin_user(app.config["ADMIN_EMAIL"], app.config["ADMIN_PASSWORD"])

        if not Course.query.first():
            cursos = [
                Course(
                    title="Workplace Safety Essentials",
                    description="Hazard identification, PPE and emergency procedures.",
                    duration=30,
                    is_compliance_course=True,
                    is_auto_enroll_new_employees=True,
                    course_type="recurring",
                    renewal_period_months=12,
                ),
                Course(
                    title="Information Security Awareness",
                    description="Phishing, passwords and data handling.",
                    duration=20,
                    is_compliance_course=True,
                    course_type="recurring",
                    renewal_period_months=6,
                ),
                Course(
                    title="Company Onboarding",
                    description="Culture, policies and tools.",
                    duration=45,
                    course_type="one-time",
                ),
            ]
            db.session.add_all(cursos)

        db.session.commit()
        print("✅ Seed aplicado: admin e cursos padrão criados (se não existiam).")


def main():
    import argparse
    ap = argparse.ArgumentParser(description="Reset do banco de dados (purge/drop/seed).")
    g = ap.add_mutually_exclusive_group(required=True)
    g.add_argument("--purge", action="store_true", help="Apaga todos os registros (mantém as tabelas).")
    g.add_argument("--drop", action="store_true", help="Dropa e recria as tabelas (vazio).")
    ap.add_argument("--seed", action="store_true", help="Após limpar, repovoar com admin/cursos.")
    args = ap.parse_args()

    app = create_app({"ENABLE_SCHEDULER": False})

    if args.purge:
        deleted = purge_data(app)
        print("🧹 Purge concluído:", deleted)
    elif args.drop:
        drop_and_recreate(app)
        print("🧨 Drop & recreate concluído.")

    if args.seed:
        seed_defaults(app)


if __name__ == "__main__":
    main()
