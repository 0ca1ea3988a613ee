"""Rule based cheating detection over individual client activity events."""
from collections import deque, namedtuple
from datetime import datetime, timedelta
import logging
import threading

logger = logging.getLogger(__name__)

SEVERITY_WEIGHTS = {'low': 0.25, 'medium': 0.5, 'high': 0.75, 'critical': 1.0}
SEVERITY_ORDER = {'critical': 0, 'high': 1, 'medium': 2, 'low': 3}

SUSPICIOUS_SHORTCUTS = ('Ctrl+A', 'Ctrl+C', 'Ctrl+V', 'Ctrl+Shift+I', 'F12', 'Ctrl+Shift+C', 'Ctrl+U')

HISTORY_LIMIT = 200

CheatingPattern = namedtuple('CheatingPattern', 'id name severity cooldown_minutes detector')


def parse_timestamp(value):
    """Activity timestamps arrive as epoch milliseconds, ISO strings or not at all."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00')).replace(tzinfo=None)
        except ValueError:
            pass
    return datetime.now()


def epoch_ms(value):
    """The same timestamps as epoch milliseconds, which is what telemetry arithmetic uses."""
    if isinstance(value, (int, float)):
        return value
    return round(parse_timestamp(value).timestamp() * 1000)


def normalize_activity(raw):
    data = raw.get('data') or {}
    if not isinstance(data, dict):
        data = {'value': data}
    return {
        'action': str(raw.get('action') or raw.get('event') or 'unknown'),
        'data': data,
        'timestamp': parse_timestamp(raw.get('timestamp')),
    }


def to_number(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _slope(a, b):
    dx = to_number(b.get('x')) - to_number(a.get('x'))
    if dx == 0:
        return None
    return (to_number(b.get('y')) - to_number(a.get('y'))) / dx


def is_robotic_movement(movement):
    points = (movement or {}).get('points')
    if not isinstance(points, list):
        return False
    points = [p for p in points if isinstance(p, dict)]
    if len(points) < 3:
        return False
    straight = 0
    constant_speed = 0
    for i in range(2, len(points)):
        p1, p2, p3 = points[i - 2], points[i - 1], points[i]
        s1, s2 = _slope(p1, p2), _slope(p2, p3)
        if (s1 is None and s2 is None) or (s1 is not None and s2 is not None and abs(s1 - s2) < 0.01):
            straight += 1
        t1 = epoch_ms(p2.get('timestamp')) - epoch_ms(p1.get('timestamp'))
        t2 = epoch_ms(p3.get('timestamp')) - epoch_ms(p2.get('timestamp'))
        if abs(t1 - t2) < 10:
            constant_speed += 1
    triples = float(len(points) - 2)
    return straight / triples > 0.8 or constant_speed / triples > 0.9


def user_stats(activities):
    stats = {'average_response_time': 0.0, 'tab_switches': 0, 'copy_paste_attempts': 0,
             'window_focus_changes': 0}
    total_time = 0.0
    answers = 0
    for activity in activities:
        action = activity['action']
        data = activity['data']
        if action == 'question_answered' and data.get('time_spent'):
            total_time += to_number(data.get('time_spent'))
            answers += 1
        elif action == 'visibility_change':
            if data.get('reason') == 'tab_switch':
                stats['tab_switches'] += 1
            stats['window_focus_changes'] += 1
        elif action == 'clipboard_event' and data.get('type') in ('copy', 'paste'):
            stats['copy_paste_attempts'] += 1
    stats['average_response_time'] = total_time / answers if answers else 0.0
    return stats


def _suspicious_timing(activity, context):
    if activity['action'] != 'question_answered':
        return False
    average = context['stats']['average_response_time']
    return average > 0 and to_number(activity['data'].get('time_spent')) < average * 0.1


def _answers_burst(activity, context):
    if activity['action'] != 'bulk_answer':
        return False
    window = timedelta(milliseconds=2000)
    recent = [a for a in context['previous']
              if a['action'] == 'question_answered' and activity['timestamp'] - a['timestamp'] < window]
    return len(recent) > 3


DEFAULT_PATTERNS = (
    CheatingPattern('tab_switch', 'Tab/Window Switching', 'medium', 5,
                    lambda a, c: a['action'] == 'visibility_change' and a['data'].get('hidden') is True
                    and a['data'].get('reason') == 'tab_switch'),
    CheatingPattern('copy_paste_attempt', 'Copy/Paste Attempt', 'high', 2,
                    lambda a, c: a['action'] == 'clipboard_event' and a['data'].get('type') in ('copy', 'paste')),
    CheatingPattern('right_click', 'Right Click Usage', 'low', 10,
                    lambda a, c: a['action'] == 'context_menu'
                    or (a['action'] == 'mouse_event' and a['data'].get('button') == 2)),
    CheatingPattern('dev_tools_open', 'Developer Tools Opened', 'critical', 1,
                    lambda a, c: a['action'] == 'dev_tools_opened' or a['data'].get('key_combination') == 'F12'),
    CheatingPattern('suspicious_timing', 'Suspicious Answer Timing', 'medium', 15, _suspicious_timing),
    CheatingPattern('excessive_tab_switches', 'Excessive Tab Switching', 'high', 10,
                    lambda a, c: a['action'] == 'visibility_change' and c['stats']['tab_switches'] > 5),
    CheatingPattern('window_minimized', 'Window Minimized', 'high', 3,
                    lambda a, c: a['action'] == 'visibility_change' and a['data'].get('reason') == 'minimized'),
    CheatingPattern('suspicious_mouse_movement', 'Suspicious Mouse Movement', 'medium', 20,
                    lambda a, c: a['action'] == 'mouse_movement' and is_robotic_movement(a['data'])),
    CheatingPattern('multiple_answers_same_time', 'Multiple Questions Answered Simultaneously', 'high', 5,
                    _answers_burst),
    CheatingPattern('keyboard_shortcuts', 'Suspicious Keyboard Shortcuts', 'medium', 8,
                    lambda a, c: a['action'] == 'keyboard_shortcut'
                    and str(a['data'].get('combination')) in SUSPICIOUS_SHORTCUTS),
)


class CheatingDetector(object):
    def __init__(self, patterns=DEFAULT_PATTERNS):
        self.patterns = list(patterns)
        self._cooldowns = {}
        self._history = {}
        self._lock = threading.Lock()

    def history(self, exam_id, user_id):
        return list(self._history.get((exam_id, user_id), ()))

    def analyze(self, exam_id, user_id, raw_activity, now=None):
        """Score one activity; returns an alert dict or None.

        The activity is appended to the per-student history after scoring so
        that context statistics only ever describe earlier events.
        """
        now = now or datetime.now()
        activity = normalize_activity(raw_activity)
        with self._lock:
            history = self._history.setdefault((exam_id, user_id), deque(maxlen=HISTORY_LIMIT))
            previous = list(history)
            history.append(activity)
            context = {'previous': previous, 'stats': user_stats(previous)}

            detected = []
            highest = 'low'
            total_weight = 0.0
            for pattern in self.patterns:
                if not pattern.detector(activity, context):
                    continue
                key = (exam_id, user_id, pattern.id)
                last = self._cooldowns.get(key)
                if last and now - last <= timedelta(minutes=pattern.cooldown_minutes):
                    continue
                detected.append(pattern.id)
                weight = SEVERITY_WEIGHTS[pattern.severity]
                if weight > SEVERITY_WEIGHTS[highest]:
                    highest = pattern.severity
                total_weight += weight

            if not detected:
                return None
            for pattern_id in detected:
                self._cooldowns[(exam_id, user_id, pattern_id)] = now

        confidence = min(total_weight / len(detected), 1.0)
        logger.info('Cheating alert for user %s in exam %s: %s', user_id, exam_id, ', '.join(detected))
        return {
            'exam_id': exam_id,
            'user_id': user_id,
            'alert_type': detected[0],
            'severity': highest,
            'confidence': confidence,
            'details': {
                'patterns': detected,
                'confidence': confidence,
                'activity': {'action': activity['action'], 'data': activity['data'],
                             'timestamp': activity['timestamp'].isoformat()},
                'stats': context['stats'],
            },
            'timestamp': now.isoformat(),
        }

    def forget(self, exam_id, user_id):
        with self._lock:
            self._history.pop((exam_id, user_id), None)
            for key in [k for k in self._cooldowns if k[0] == exam_id and k[1] == user_id]:
                del self._cooldowns[key]

    def clear_stale_cooldowns(self, max_age_hours=24):
        cutoff = datetime.now() - timedelta(hours=max_age_hours)
        with self._lock:
            stale = [k for k, ts in self._cooldowns.items() if ts < cutoff]
            for key in stale:
                del self._cooldowns[key]
        return len(stale)

    def stats(self):
        return {
            'patterns': len(self.patterns),
            'tracked_students': len(self._history),
            'active_cooldowns': len(self._cooldowns),
        }


def summarize_attempt_activity(records):
    """Offline risk summary over an attempt's stored activity log."""
    violations = {
        'fullscreen_exit': 0,
        'window_blur': 0,
        'window_hidden': 0,
        'shortcut_blocked': 0,
        'tab_switch': 0,
        'alerts': 0,
    }
    activities = []

    events = [str(r.get('event', '')).lower() for r in records]
    for event in events:
        if 'fullscreen' in event and ('exit' in event or 'change' in event):
            violations['fullscreen_exit'] += 1
        if 'blur' in event:
            violations['window_blur'] += 1
        if 'hidden' in event:
            violations['window_hidden'] += 1
        if 'shortcut' in event and 'blocked' in event:
            violations['shortcut_blocked'] += 1
        if event == 'cheating_alert':
            violations['alerts'] += 1

    # blur followed by focus counts as one tab switch
    for curr, nxt in zip(events, events[1:]):
        if 'blur' in curr and 'focus' in nxt:
            violations['tab_switch'] += 1

    is_suspicious = False
    severity = 'low'
    violation_type = 'Normal Activity'
    description = 'No suspicious activity detected.'

    if violations['fullscreen_exit'] >= 1:
        is_suspicious = True
        severity = 'critical'
        violation_type = 'Fullscreen Exit Detected'
        description = 'Student exited fullscreen mode %d time(s).' % violations['fullscreen_exit']
        activities.append({'event': 'FULLSCREEN_EXIT', 'count': violations['fullscreen_exit']})

    if violations['shortcut_blocked'] >= 1:
        is_suspicious = True
        if severity != 'critical':
            severity = 'high'
        violation_type = 'Blocked Shortcuts Detected'
        description = 'Attempted blocked shortcuts %d time(s).' % violations['shortcut_blocked']
        activities.append({'event': 'SHORTCUT_BLOCKED', 'count': violations['shortcut_blocked']})

    if violations['tab_switch'] >= 3:
        is_suspicious = True
        if severity not in ('critical', 'high'):
            severity = 'medium'
        violation_type = 'Tab Switching Detected'
        description = 'Switched between windows or tabs %d times.' % violations['tab_switch']
        activities.append({'event': 'TAB_SWITCH', 'count': violations['tab_switch']})

    if violations['window_blur'] >= 5:
        is_suspicious = True
        if severity not in ('critical', 'high'):
            severity = 'medium'
        activities.append({'event': 'WINDOW_BLUR', 'count': violations['window_blur']})

    if violations['window_hidden'] >= 3:
        is_suspicious = True
        if severity not in ('critical', 'high'):
            severity = 'medium'
        activities.append({'event': 'WINDOW_HIDDEN', 'count': violations['window_hidden']})

    if violations['alerts'] >= 1 and not is_suspicious:
        is_suspicious = True
        severity = 'medium'
        violation_type = 'Live Alerts Raised'
        description = '%d live proctoring alert(s) were raised.' % violations['alerts']
        activities.append({'event': 'LIVE_ALERT', 'count': violations['alerts']})

    return {
        'is_suspicious': is_suspicious,
        'severity': severity,
        'violation_type': violation_type,
        'description': description,
        'activities': activities,
        'violations': violations,
    }
