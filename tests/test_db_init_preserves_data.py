import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))
import app as helpdesk_app  # noqa: E402
from helpdesk.models import Priority, Ticket  # noqa: E402
from factories import make_ticket, make_user  # noqa: E402


def configure_isolated_db(tmp_path):
    db_path = tmp_path / "helpdesk.db"
    helpdesk_app.configure_database(f"sqlite:///{db_path}")
    with helpdesk_app.app.app_context():
        helpdesk_app.init_db()
    return db_path


def test_init_db_preserves_existing_tickets(tmp_path):
    configure_isolated_db(tmp_path)

    with helpdesk_app.app.app_context():
        db = helpdesk_app.get_session()
        make_ticket(db, make_user(db, email="employee@example.com"), subject="Original Ticket")

    with helpdesk_app.app.app_context():
        helpdesk_app.init_db()
        db = helpdesk_app.get_session()
        subjects = [t.subject for t in db.query(Ticket).all()]
        priorities = db.query(Priority).count()

    assert subjects == ["Original Ticket"]
    assert priorities == 4
