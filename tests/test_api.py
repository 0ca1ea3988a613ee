from datetime import datetime, timedelta

import pytest

import app as server
from conftest import login
from models import db, ExamAttempt, Notification


def client_for(app, make, user_id):
    client = app.test_client()
    login(client, make, user_id)
    return client


def _start(client, exam_id):
    resp = client.post('/api/exams/%d/start' % exam_id)
    assert resp.status_code in (200, 201), resp.get_json()
    return resp.get_json()['attempt']['id']


def test_login_and_auth_errors(app, campus, make):
    client = app.test_client()
    resp = client.post('/api/auth/login', json={'username': make.username(campus['student_id']), 'password': 'x'})
    assert resp.status_code == 401
    resp = client.get('/api/notifications')
    assert resp.status_code == 401
    assert resp.get_json() == {'status': 'error', 'message': 'Authentication required'}

    login(client, make, campus['student_id'])
    assert client.get('/api/notifications').status_code == 200
    assert client.post('/api/auth/logout').status_code == 200
    assert client.get('/api/notifications').status_code == 401


def test_health(app):
    body = app.test_client().get('/health').get_json()
    assert body['status'] == 'ok'
    assert body['total_sessions'] == 0


def test_teacher_builds_and_publishes_exam(app, campus, make):
    teacher = client_for(app, make, campus['teacher_id'])
    now = datetime.now()
    resp = teacher.post('/api/exams', json={
        'title': 'Quiz',
        'start_time': (now - timedelta(minutes=5)).isoformat(),
        'end_time': (now + timedelta(hours=1)).isoformat(),
        'duration_minutes': 30,
        'class_id': campus['class_id'],
        'subject_id': campus['subject_id'],
    })
    assert resp.status_code == 201
    exam = resp.get_json()['exam']
    assert exam['college_id'] == campus['college_id']
    assert not exam['is_published']

    resp = teacher.post('/api/exams/%d/publish' % exam['id'])
    assert resp.status_code == 400

    bad = teacher.post('/api/exams/%d/questions' % exam['id'],
                       json={'text': 'Pick', 'type': 'multiple_choice', 'options': ['a', 'b'], 'correct_answer': 'c'})
    assert bad.status_code == 400
    resp = teacher.post('/api/exams/%d/questions' % exam['id'],
                        json={'text': 'Sky is blue', 'type': 'true_false', 'correct_answer': 'true', 'marks': 2})
    assert resp.status_code == 201
    assert resp.get_json()['question']['options'] == ['true', 'false']

    # students cannot see an unpublished exam
    student = client_for(app, make, campus['student_id'])
    assert student.get('/api/exams/%d' % exam['id']).status_code == 404

    assert teacher.post('/api/exams/%d/publish' % exam['id']).get_json()['exam']['is_published']
    locked = teacher.post('/api/exams/%d/questions' % exam['id'], json={'text': 'Late', 'type': 'essay'})
    assert locked.status_code == 409

    seen = student.get('/api/exams/%d' % exam['id']).get_json()['exam']
    assert 'correct_answer' not in seen['questions'][0]
    assert teacher.get('/api/exams/%d' % exam['id']).get_json()['exam']['questions'][0]['correct_answer'] == 'true'


def test_create_exam_validation(app, campus, make):
    teacher = client_for(app, make, campus['teacher_id'])
    now = datetime.now()
    resp = teacher.post('/api/exams', json={'title': 'Backwards', 'start_time': now.isoformat(),
                                            'end_time': (now - timedelta(hours=1)).isoformat()})
    assert resp.status_code == 400
    assert resp.get_json()['status'] == 'error'
    assert teacher.post('/api/exams', json={'start_time': now.isoformat()}).status_code == 400
    student = client_for(app, make, campus['student_id'])
    assert student.post('/api/exams', json={'title': 'Nope'}).status_code == 403


def test_start_resume_and_submit(app, campus, make):
    student = client_for(app, make, campus['student_id'])
    first = student.post('/api/exams/%d/start' % campus['exam_id'])
    assert first.status_code == 201
    body = first.get_json()
    assert not body['resumed']
    assert len(body['questions']) == 4
    assert all('correct_answer' not in q for q in body['questions'])

    again = student.post('/api/exams/%d/start' % campus['exam_id'])
    assert again.status_code == 200
    assert again.get_json()['resumed']

    attempt_id = body['attempt']['id']
    q1, q2, q3, _ = make.question_ids(campus['exam_id'])
    saved = student.post('/api/attempts/%d/answers' % attempt_id, json={'answers': {str(q1): '4'}})
    assert saved.get_json()['saved'] == 1

    resp = student.post('/api/attempts/%d/submit' % attempt_id, json={'answers': {str(q2): 'Paris', str(q3): 'true'}})
    assert resp.status_code == 200
    result = resp.get_json()['result']
    assert result['score'] == 6
    assert result['grade'] == 'C'

    assert student.post('/api/attempts/%d/submit' % attempt_id).status_code == 409
    assert student.post('/api/exams/%d/start' % campus['exam_id']).status_code == 409

    notes = student.get('/api/notifications').get_json()
    assert notes['unread'] == 1
    assert notes['notifications'][0]['title'] == 'Exam Completed'
    note_id = notes['notifications'][0]['id']
    assert student.post('/api/notifications/%d/read' % note_id).status_code == 200
    assert student.get('/api/notifications?unread=1').get_json()['notifications'] == []


def test_attempts_are_private(app, campus, make):
    student = client_for(app, make, campus['student_id'])
    attempt_id = _start(student, campus['exam_id'])
    other = client_for(app, make, campus['other_id'])
    assert other.get('/api/attempts/%d' % attempt_id).status_code == 403
    assert other.post('/api/attempts/%d/submit' % attempt_id).status_code == 403
    teacher = client_for(app, make, campus['teacher_id'])
    assert teacher.get('/api/attempts/%d' % attempt_id).get_json()['attempt']['user_id'] == campus['student_id']


def test_tenant_isolation(app, campus, make):
    elsewhere = make.college('Elsewhere')
    foreign_teacher = make.user('teacher', elsewhere)
    foreign_student = make.user('student', elsewhere)
    teacher = client_for(app, make, foreign_teacher)
    assert teacher.get('/api/exams/%d' % campus['exam_id']).status_code == 403
    assert teacher.get('/api/monitoring/exams/%d' % campus['exam_id']).status_code == 403
    assert teacher.get('/api/classes/%d/rankings' % campus['class_id']).status_code == 403
    assert teacher.get('/api/subjects/%d/rankings' % campus['subject_id']).status_code == 403
    student = client_for(app, make, foreign_student)
    assert student.post('/api/exams/%d/start' % campus['exam_id']).status_code == 403

    root = make.user('super_admin')
    admin = client_for(app, make, root)
    assert admin.get('/api/monitoring/exams/%d' % campus['exam_id']).status_code == 200


def test_activity_raises_alert_and_notifies_staff(app, campus, make):
    student = client_for(app, make, campus['student_id'])
    attempt_id = _start(student, campus['exam_id'])
    resp = student.post('/api/attempts/%d/activity' % attempt_id, json={'activities': [
        {'action': 'question_viewed', 'data': {'question_id': 1}},
        {'action': 'clipboard_event', 'data': {'type': 'paste'}},
    ]})
    body = resp.get_json()
    assert body['status'] == 'ok'
    assert body['processed'] == 2
    assert [a['alert_type'] for a in body['alerts']] == ['copy_paste_attempt']

    teacher = client_for(app, make, campus['teacher_id'])
    notes = teacher.get('/api/notifications').get_json()['notifications']
    assert notes[0]['title'] == 'Cheating Alert - Midterm'
    assert notes[0]['priority'] == 'high'

    alerts = teacher.get('/api/monitoring/exams/%d/alerts' % campus['exam_id']).get_json()
    assert alerts['total'] == 1
    assert alerts['stats']['high'] == 1
    alert_id = alerts['alerts'][0]['id']
    assert alerts['alerts'][0]['student_name'] == make.username(campus['student_id'])

    reviewed = teacher.post('/api/alerts/%d/review' % alert_id, json={'notes': 'false positive'}).get_json()
    assert reviewed['alert']['reviewed']
    assert reviewed['alert']['notes'] == 'false positive'
    pending = teacher.get('/api/monitoring/exams/%d/alerts?reviewed=false' % campus['exam_id']).get_json()
    assert pending['total'] == 0
    assert teacher.get('/api/monitoring/exams/%d/alerts?severity=critical' % campus['exam_id']) \
        .get_json()['total'] == 0

    with app.app_context():
        attempt = db.session.get(ExamAttempt, attempt_id)
        events = [r['event'] for r in attempt.records()]
        assert attempt.violation_count == 1
    assert events == ['attempt_started', 'question_viewed', 'clipboard_event', 'cheating_alert']

    summary = teacher.get('/api/monitoring/exams/%d/risk-summary' % campus['exam_id']).get_json()
    assert summary['stats']['total_students'] == 1
    assert summary['attempts'][0]['attempt_id'] == attempt_id


def test_violation_limit_terminates(app, campus, make):
    exam_id = make.exam(campus['college_id'], campus['teacher_id'], class_id=campus['class_id'], max_violations=1)
    student = client_for(app, make, campus['student_id'])
    attempt_id = _start(student, exam_id)
    body = student.post('/api/attempts/%d/activity' % attempt_id,
                        json={'action': 'context_menu', 'data': {}}).get_json()
    assert body['status'] == 'terminated'
    again = student.post('/api/attempts/%d/activity' % attempt_id, json={'action': 'context_menu'})
    assert again.status_code == 409
    notes = student.get('/api/notifications').get_json()['notifications']
    terminated = [n for n in notes if n['title'] == 'Exam Terminated']
    assert 'Violation limit reached' in terminated[0]['message']
    assert 'exam staff' not in terminated[0]['message']


def test_telemetry_is_scored_but_not_logged(app, campus, make, monkeypatch):
    monkeypatch.setitem(app.config, 'BEHAVIOR_ALERT_THRESHOLD', 5)
    student = client_for(app, make, campus['student_id'])
    attempt_id = _start(student, campus['exam_id'])
    keys = [{'key': 'a', 'timestamp': 1000 + i * 100} for i in range(25)]
    body = student.post('/api/attempts/%d/activity' % attempt_id,
                        json={'action': 'keystroke', 'data': {'keys': keys}}).get_json()
    assert body['risk_level'] == 'low'
    assert [a['alert_type'] for a in body['alerts']] == ['suspicious_pattern']
    assert 'robotic_typing_pattern' in body['alerts'][0]['details']['patterns']

    # one behavior alert per cooldown window
    body = student.post('/api/attempts/%d/activity' % attempt_id,
                        json={'action': 'keystroke', 'data': {'keys': keys}}).get_json()
    assert body['alerts'] == []

    with app.app_context():
        events = [r['event'] for r in db.session.get(ExamAttempt, attempt_id).records()]
    assert 'keystroke' not in events


def test_suspend_and_resume(app, campus, make):
    student = client_for(app, make, campus['student_id'])
    attempt_id = _start(student, campus['exam_id'])
    teacher = client_for(app, make, campus['teacher_id'])
    assert teacher.post('/api/attempts/%d/suspend' % attempt_id).status_code == 404

    server.session_manager.start_session(campus['exam_id'], campus['student_id'], 'sid-1', attempt_id=attempt_id)
    resp = teacher.post('/api/attempts/%d/suspend' % attempt_id, json={'reason': 'ID check'})
    assert resp.get_json()['session']['status'] == 'suspended'
    blocked = student.post('/api/attempts/%d/activity' % attempt_id, json={'action': 'question_viewed'})
    assert blocked.status_code == 423

    assert teacher.post('/api/attempts/%d/resume' % attempt_id).status_code == 200
    assert teacher.post('/api/attempts/%d/resume' % attempt_id).status_code == 409
    assert student.post('/api/attempts/%d/activity' % attempt_id, json={'action': 'question_viewed'}) \
        .status_code == 200

    status = teacher.get('/api/monitoring/exams/%d' % campus['exam_id']).get_json()['exam']
    assert status['active_students'] == 1
    students = teacher.get('/api/monitoring/exams/%d/students' % campus['exam_id']).get_json()['students']
    assert students[0]['session']['status'] == 'active'


def test_suspension_survives_idle_sweep(app, campus, make):
    student = client_for(app, make, campus['student_id'])
    attempt_id = _start(student, campus['exam_id'])
    server.session_manager.start_session(campus['exam_id'], campus['student_id'], 'sid-1', attempt_id=attempt_id)
    teacher = client_for(app, make, campus['teacher_id'])
    assert teacher.post('/api/attempts/%d/suspend' % attempt_id).status_code == 200

    session = server.session_manager.get_session(campus['exam_id'], campus['student_id'])
    session.last_activity = datetime.now() - timedelta(hours=1)
    server.sweep_once()

    resp = student.post('/api/attempts/%d/activity' % attempt_id, json={'action': 'question_viewed'})
    assert resp.status_code == 423


def test_malformed_telemetry_is_tolerated(app, campus, make):
    student = client_for(app, make, campus['student_id'])
    attempt_id = _start(student, campus['exam_id'])
    points = [{'x': 10 * i, 'y': None, 'timestamp': '2024-05-01T10:00:00.%03d' % (i * 20)} for i in range(5)]
    resp = student.post('/api/attempts/%d/activity' % attempt_id, json={'activities': [
        {'action': 'mouse_movement', 'data': {'points': points + ['junk']}},
        {'action': 'keystroke', 'data': {'keys': [{'key': 'a', 'timestamp': 'soon'}, 7]}},
        {'action': 'gaze', 'data': {'x': 'left', 'confidence': None}},
    ]})
    assert resp.status_code == 200
    assert resp.get_json()['processed'] == 3
    stats = server.behavior_engine.stats((campus['exam_id'], campus['student_id']))
    assert stats['mouse_movements'] == 5
    assert stats['keystrokes'] == 1


def test_terminate_requires_manager(app, campus, make):
    student = client_for(app, make, campus['student_id'])
    attempt_id = _start(student, campus['exam_id'])
    colleague = client_for(app, make, make.user('teacher', campus['college_id']))
    assert colleague.post('/api/attempts/%d/terminate' % attempt_id).status_code == 403

    admin = client_for(app, make, campus['admin_id'])
    resp = admin.post('/api/attempts/%d/terminate' % attempt_id, json={'reason': 'phone'})
    assert resp.get_json()['attempt']['status'] == 'terminated'
    assert admin.post('/api/attempts/%d/terminate' % attempt_id).status_code == 409

    marked = admin.post('/api/attempts/%d/mark' % attempt_id, json={'score': 7}).get_json()
    assert marked['result']['score'] == 7
    assert marked['result']['grade'] == 'B'


def test_rankings(app, campus, make):
    q1, q2, _, _ = make.question_ids(campus['exam_id'])
    for user_id, answers in ((campus['student_id'], {str(q1): '4'}),
                             (campus['other_id'], {str(q1): '4', str(q2): 'Paris'})):
        client = client_for(app, make, user_id)
        attempt_id = _start(client, campus['exam_id'])
        client.post('/api/attempts/%d/submit' % attempt_id, json={'answers': answers})

    teacher = client_for(app, make, campus['teacher_id'])
    items = teacher.get('/api/exams/%d/rankings' % campus['exam_id']).get_json()['items']
    assert [i['user_id'] for i in items] == [campus['other_id'], campus['student_id']]
    assert items[0]['rank'] == 1

    student = client_for(app, make, campus['student_id'])
    assert student.get('/api/exams/%d/rankings' % campus['exam_id']).status_code == 403
    mine = student.get('/api/exams/%d/results/mine' % campus['exam_id']).get_json()
    assert mine['position'] == {'rank': 2, 'of': 2}
    assert mine['result']['score'] == 2

    subject = teacher.get('/api/subjects/%d/rankings?class_id=%d' % (campus['subject_id'], campus['class_id']))
    assert subject.get_json()['of'] == 2
    klass = teacher.get('/api/classes/%d/rankings' % campus['class_id']).get_json()
    assert klass['items'][0]['user_id'] == campus['other_id']


def test_result_missing_is_404(app, campus, make):
    student = client_for(app, make, campus['student_id'])
    assert student.get('/api/exams/%d/results/mine' % campus['exam_id']).status_code == 404


@pytest.mark.parametrize('path', ['/api/attempts/999', '/api/exams/999'])
def test_unknown_ids(app, campus, make, path):
    student = client_for(app, make, campus['student_id'])
    resp = student.get(path)
    assert resp.status_code == 404
    assert resp.get_json()['status'] == 'error'


def test_sweep_auto_submits_overdue_attempts(app, campus, make):
    student = client_for(app, make, campus['student_id'])
    attempt_id = _start(student, campus['exam_id'])
    q1 = make.question_ids(campus['exam_id'])[0]
    student.post('/api/attempts/%d/answers' % attempt_id, json={'answers': {str(q1): '4'}})
    server.session_manager.start_session(campus['exam_id'], campus['student_id'], 'sid-1', attempt_id=attempt_id)

    with app.app_context():
        attempt = db.session.get(ExamAttempt, attempt_id)
        attempt.deadline = datetime.now() - timedelta(seconds=5)
        db.session.commit()

    server.sweep_once()

    with app.app_context():
        attempt = db.session.get(ExamAttempt, attempt_id)
        assert attempt.status == 'auto_submitted'
        assert attempt.score == 2
        note = Notification.query.filter_by(user_id=campus['student_id']).one()
        assert note.title == 'Exam Auto-Submitted'
    assert server.session_manager.get_session(campus['exam_id'], campus['student_id']) is None


def test_restart_after_deadline_auto_submits(app, campus, make):
    student = client_for(app, make, campus['student_id'])
    attempt_id = _start(student, campus['exam_id'])
    with app.app_context():
        db.session.get(ExamAttempt, attempt_id).deadline = datetime.now() - timedelta(seconds=1)
        db.session.commit()

    assert student.post('/api/exams/%d/start' % campus['exam_id']).status_code == 409
    titles = [n['title'] for n in student.get('/api/notifications').get_json()['notifications']]
    assert titles == ['Exam Auto-Submitted']
