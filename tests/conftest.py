import json
import os
import tempfile
from datetime import datetime, timedelta

import pytest

_db_fd, _db_path = tempfile.mkstemp(suffix='.db')
os.environ['DATABASE_URL'] = 'sqlite:///' + _db_path
os.environ['NOTIFY_EMAIL_ENABLED'] = 'false'

import app as server  # noqa: E402
from behavior import BehaviorAnalysisEngine  # noqa: E402
from models import db, College, ClassGroup, Subject, User, Exam, Question  # noqa: E402
from proctoring import CheatingDetector  # noqa: E402
from sessions import ExamSessionManager, ConnectionRegistry  # noqa: E402

PASSWORD = 'secret'

DEFAULT_QUESTIONS = [
    {'text': '2 + 2 = ?', 'type': 'multiple_choice', 'options': ['3', '4', '5'], 'correct_answer': '4', 'marks': 2},
    {'text': 'Capital of France?', 'type': 'multiple_choice', 'options': ['Paris', 'Rome'],
     'correct_answer': 'Paris', 'marks': 3},
    {'text': 'The earth orbits the sun.', 'type': 'true_false', 'options': ['true', 'false'],
     'correct_answer': 'true', 'marks': 1},
    {'text': 'Explain photosynthesis.', 'type': 'essay', 'options': [], 'correct_answer': None, 'marks': 4},
]


class Factory(object):
    """Creates rows in their own app context and hands back plain ids."""

    def __init__(self, app):
        self.app = app
        self._n = 0

    def _next(self):
        self._n += 1
        return self._n

    def college(self, name='Test College'):
        with self.app.app_context():
            c = College(name=name, code='C%d' % self._next())
            db.session.add(c)
            db.session.commit()
            return c.id

    def class_group(self, college_id, name='CS-A'):
        with self.app.app_context():
            g = ClassGroup(name=name, college_id=college_id)
            db.session.add(g)
            db.session.commit()
            return g.id

    def subject(self, college_id, name='Physics'):
        with self.app.app_context():
            s = Subject(name=name, code='S%d' % self._next(), college_id=college_id)
            db.session.add(s)
            db.session.commit()
            return s.id

    def user(self, role, college_id=None, class_id=None, roll_no=None, email=None, username=None):
        with self.app.app_context():
            u = User(username=username or '%s%d' % (role, self._next()), role=role, college_id=college_id,
                     class_id=class_id, roll_no=roll_no, email=email)
            u.set_password(PASSWORD)
            db.session.add(u)
            db.session.commit()
            return u.id

    def username(self, user_id):
        with self.app.app_context():
            return db.session.get(User, user_id).username

    def exam(self, college_id, creator_id, questions=None, **overrides):
        now = datetime.now()
        fields = dict(title='Midterm', college_id=college_id, creator_id=creator_id,
                      start_time=now - timedelta(hours=1), end_time=now + timedelta(hours=2),
                      duration_minutes=60, is_published=True, is_active=True)
        fields.update(overrides)
        with self.app.app_context():
            exam = Exam(**fields)
            db.session.add(exam)
            db.session.flush()
            for q in (DEFAULT_QUESTIONS if questions is None else questions):
                db.session.add(Question(exam_id=exam.id, text=q['text'], type=q['type'],
                                        options=json.dumps(q.get('options') or []),
                                        correct_answer=q.get('correct_answer'), marks=q.get('marks', 1)))
            db.session.commit()
            return exam.id

    def question_ids(self, exam_id):
        with self.app.app_context():
            return [q.id for q in Question.query.filter_by(exam_id=exam_id).order_by(Question.id).all()]


@pytest.fixture
def app(monkeypatch):
    server.app.config.update(TESTING=True, NOTIFY_EMAIL_ENABLED=False)
    monkeypatch.setattr(server, 'session_manager', ExamSessionManager())
    monkeypatch.setattr(server, 'connections', ConnectionRegistry())
    monkeypatch.setattr(server, 'detector', CheatingDetector())
    monkeypatch.setattr(server, 'behavior_engine', BehaviorAnalysisEngine())
    with server.app.app_context():
        db.create_all()
    yield server.app
    with server.app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield
        db.session.remove()


@pytest.fixture
def make(app):
    return Factory(app)


@pytest.fixture
def campus(make):
    """A college with a class, an admin, a teacher, two enrolled students and a published exam."""
    college_id = make.college()
    class_id = make.class_group(college_id)
    subject_id = make.subject(college_id)
    admin_id = make.user('college_admin', college_id, email='admin@example.com')
    teacher_id = make.user('teacher', college_id, email='teacher@example.com')
    student_id = make.user('student', college_id, class_id=class_id, roll_no='001')
    other_id = make.user('student', college_id, class_id=class_id, roll_no='002')
    exam_id = make.exam(college_id, teacher_id, subject_id=subject_id, class_id=class_id)
    return {
        'college_id': college_id,
        'class_id': class_id,
        'subject_id': subject_id,
        'admin_id': admin_id,
        'teacher_id': teacher_id,
        'student_id': student_id,
        'other_id': other_id,
        'exam_id': exam_id,
    }


def login(client, make, user_id):
    resp = client.post('/api/auth/login', json={'username': make.username(user_id), 'password': PASSWORD})
    assert resp.status_code == 200
    return resp
