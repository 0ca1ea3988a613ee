"""Telemetry buffers and anomaly scoring for mouse, keystroke, gaze and timing data.

The channel analysers are plain functions over lists of samples; the engine
only owns the per-session buffers and the last result of each session, which
is what the cross-session (coordinated cheating) checks compare against.
"""
from collections import deque
import logging
import math
import threading
import time

from proctoring import epoch_ms, to_number

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'mouse_velocity_threshold': 1000,
    'keystroke_interval_threshold': 50,
    'gaze_attention_threshold': 0.6,
    'time_pattern_threshold': 30000,
    'weights': {'mouse': 0.25, 'keystroke': 0.25, 'gaze': 0.25, 'time': 0.25},
}

BUFFER_LIMITS = {'mouse': 1000, 'keystroke': 500, 'gaze': 200, 'time': 100}
SPECIAL_KEYS = ('Shift', 'Control', 'Alt', 'Meta', 'Enter', 'Tab')
COORDINATION_WINDOW_MS = 5 * 60 * 1000
ALERT_COOLDOWN_MS = 5 * 60 * 1000


def now_ms():
    return int(time.time() * 1000)


def _samples(value):
    if not isinstance(value, (list, tuple)):
        return []
    return [s for s in value if isinstance(s, dict)]


def _mean(values):
    return sum(values) / len(values) if values else 0.0


def _variance(values):
    if not values:
        return 0.0
    avg = _mean(values)
    return sum((v - avg) ** 2 for v in values) / len(values)


def _result(score, confidence, patterns):
    return {'score': min(100, score), 'confidence': min(1.0, confidence), 'patterns': patterns}


def analyze_mouse(samples, config=DEFAULT_CONFIG):
    if len(samples) < 10:
        return _result(0, 0, [])
    patterns = []
    score = 0
    confidence = 0.0

    if _variance([s['velocity'] for s in samples]) > config['mouse_velocity_threshold']:
        patterns.append('erratic_mouse_movements')
        score += 30
        confidence += 0.8

    straight = sum(1 for prev, cur in zip(samples, samples[1:])
                   if abs(cur['direction'] - prev['direction']) < 0.1)
    if straight > len(samples) * 0.3:
        patterns.append('robotic_mouse_movements')
        score += 25
        confidence += 0.7

    if max(abs(s['acceleration']) for s in samples) > 5000:
        patterns.append('sudden_mouse_acceleration')
        score += 20
        confidence += 0.6

    return _result(score, confidence, patterns)


def analyze_keystrokes(samples, config=DEFAULT_CONFIG):
    if len(samples) < 20:
        return _result(0, 0, [])
    patterns = []
    score = 0
    confidence = 0.0

    intervals = [s['interval'] for s in samples if s['interval'] > 0]
    if intervals and _variance(intervals) < 10:
        patterns.append('robotic_typing_pattern')
        score += 35
        confidence += 0.9

    backspaces = sum(1 for s in samples if s['is_backspace'])
    if backspaces / float(len(samples)) > 0.15:
        patterns.append('excessive_backspacing')
        score += 20
        confidence += 0.7

    rapid = 0
    for i in range(5, len(samples)):
        if all(s['interval'] < 10 for s in samples[i - 5:i + 1]):
            rapid += 1
    if rapid > len(samples) * 0.1:
        patterns.append('rapid_text_insertion')
        score += 30
        confidence += 0.8

    return _result(score, confidence, patterns)


def analyze_gaze(samples, config=DEFAULT_CONFIG):
    if len(samples) < 5:
        return _result(0, 0, [])
    patterns = []
    score = 0
    confidence = 0.0

    if _mean([s['confidence'] for s in samples]) < config['gaze_attention_threshold']:
        patterns.append('low_attention_detected')
        score += 25
        confidence += 0.7

    fixed = 0
    for i in range(10, len(samples)):
        window = samples[i - 10:i + 1]
        avg_x = _mean([w['x'] for w in window])
        avg_y = _mean([w['y'] for w in window])
        if all(abs(w['x'] - avg_x) < 10 and abs(w['y'] - avg_y) < 10 for w in window):
            fixed += 1
    if fixed > len(samples) * 0.2:
        patterns.append('unusual_gaze_fixation')
        score += 20
        confidence += 0.6

    blink_rate = _mean([s['blink_rate'] for s in samples])
    if blink_rate < 0.5 or blink_rate > 30:
        patterns.append('abnormal_blink_rate')
        score += 15
        confidence += 0.5

    if _mean([s['pupil_dilation'] for s in samples]) > 0.8:
        patterns.append('elevated_stress_indicators')
        score += 10
        confidence += 0.4

    return _result(score, confidence, patterns)


def analyze_time_patterns(samples, config=DEFAULT_CONFIG):
    if len(samples) < 3:
        return _result(0, 0, [])
    patterns = []
    score = 0
    confidence = 0.0

    if _variance([s['time_spent'] for s in samples]) > config['time_pattern_threshold']:
        patterns.append('inconsistent_time_patterns')
        score += 25
        confidence += 0.7

    fast = sum(1 for s in samples if s['time_spent'] < 5000 and s['answer_length'] > 50)
    if fast > len(samples) * 0.2:
        patterns.append('suspiciously_fast_answers')
        score += 30
        confidence += 0.8

    if _mean([s['hesitation_count'] for s in samples]) > 5:
        patterns.append('excessive_hesitation')
        score += 15
        confidence += 0.6

    if _mean([s['revision_count'] for s in samples]) > 3:
        patterns.append('frequent_answer_revisions')
        score += 20
        confidence += 0.7

    return _result(score, confidence, patterns)


def risk_level(score):
    if score >= 80:
        return 'critical'
    if score >= 60:
        return 'high'
    if score >= 40:
        return 'medium'
    return 'low'


def recommendations_for(patterns, level):
    found = set(patterns)

    def has_prefix(prefix):
        return any(p.startswith(prefix) for p in found)

    recs = []
    if found & {'robotic_mouse_movements', 'robotic_typing_pattern'}:
        recs.append('Automated behavior detected - consider manual verification')
    if found & {'rapid_text_insertion', 'suspiciously_fast_answers'}:
        recs.append('Unusual speed detected - review answer authenticity')
    if found & {'low_attention_detected', 'unusual_gaze_fixation'}:
        recs.append('Attention anomalies detected - consider proctoring intervention')
    if has_prefix('coordinated_cheating_detected'):
        recs.append('Coordinated cheating suspected - investigate multiple sessions')
    if has_prefix('identical_mouse_patterns'):
        recs.append('Identical behavior patterns detected - check for session sharing')
    if level == 'critical':
        recs.append('Critical risk level - immediate intervention recommended')
    elif level == 'high':
        recs.append('High risk level - close monitoring advised')
    return recs


def combine(channels, config=DEFAULT_CONFIG):
    weights = config['weights']
    score = sum(channels[name]['score'] * weights[name] for name in ('mouse', 'keystroke', 'gaze', 'time'))
    confidence = _mean([channels[name]['confidence'] for name in ('mouse', 'keystroke', 'gaze', 'time')])
    patterns = []
    for name in ('mouse', 'keystroke', 'gaze', 'time'):
        patterns.extend(channels[name]['patterns'])
    return min(100.0, score), confidence, patterns


def mouse_similarity(first, second):
    if not first or not second:
        return 0.0
    n = min(len(first), len(second))
    a, b = first[-n:], second[-n:]
    total = 0.0
    for x, y in zip(a, b):
        total += 1 - abs(x['velocity'] - y['velocity']) / max(x['velocity'], y['velocity'], 1)
    return total / n


class BehaviorAnalysisEngine(object):
    """Per-session telemetry buffers keyed by (exam_id, user_id)."""

    def __init__(self, config=None):
        self.config = config or DEFAULT_CONFIG
        self._buffers = {}
        self._last_results = {}
        self._alerted = {}
        self._lock = threading.Lock()

    def _buffer(self, key, channel):
        buffers = self._buffers.get(key)
        if buffers is None:
            buffers = dict((name, deque(maxlen=limit)) for name, limit in BUFFER_LIMITS.items())
            self._buffers[key] = buffers
        return buffers[channel]

    def record_mouse(self, key, x, y, timestamp=None):
        timestamp = epoch_ms(timestamp)
        x, y = to_number(x), to_number(y)
        with self._lock:
            buf = self._buffer(key, 'mouse')
            velocity = acceleration = direction = 0.0
            if buf:
                prev = buf[-1]
                dt = timestamp - prev['timestamp']
                if dt > 0:
                    velocity = math.hypot(x - prev['x'], y - prev['y']) / dt
                    if len(buf) > 1:
                        acceleration = (velocity - prev['velocity']) / dt
                direction = math.atan2(y - prev['y'], x - prev['x'])
            buf.append({'x': x, 'y': y, 'timestamp': timestamp, 'velocity': velocity,
                        'acceleration': acceleration, 'direction': direction})

    def record_keystroke(self, key, pressed, duration=0, timestamp=None):
        timestamp = epoch_ms(timestamp)
        pressed = str(pressed) if pressed is not None else ''
        with self._lock:
            buf = self._buffer(key, 'keystroke')
            interval = timestamp - buf[-1]['timestamp'] if buf else 0
            buf.append({'key': pressed, 'timestamp': timestamp, 'duration': to_number(duration),
                        'interval': interval, 'is_backspace': pressed == 'Backspace',
                        'is_special': pressed in SPECIAL_KEYS})

    def record_gaze(self, key, x, y, confidence, pupil_dilation=0.0, blink_rate=15.0, timestamp=None):
        with self._lock:
            self._buffer(key, 'gaze').append({
                'x': to_number(x), 'y': to_number(y), 'confidence': to_number(confidence),
                'pupil_dilation': to_number(pupil_dilation), 'blink_rate': to_number(blink_rate),
                'timestamp': epoch_ms(timestamp),
            })

    def record_time_pattern(self, key, question_id, start_time, end_time, answer_length=0,
                            hesitation_count=0, revision_count=0):
        start_time, end_time = epoch_ms(start_time), epoch_ms(end_time)
        with self._lock:
            self._buffer(key, 'time').append({
                'question_id': question_id, 'start_time': start_time, 'end_time': end_time,
                'time_spent': end_time - start_time, 'answer_length': to_number(answer_length),
                'hesitation_count': to_number(hesitation_count), 'revision_count': to_number(revision_count),
            })

    def ingest(self, key, action, data):
        """Feed one client activity into the buffers; returns True if it carried telemetry.

        Samples that are not objects are skipped.
        """
        if action == 'mouse_movement':
            points = _samples(data.get('points'))
            for point in points:
                self.record_mouse(key, point.get('x'), point.get('y'), point.get('timestamp'))
            return bool(points)
        if action == 'keystroke':
            keys = _samples(data.get('keys') or [data])
            for k in keys:
                self.record_keystroke(key, k.get('key'), k.get('duration', 0), k.get('timestamp'))
            return bool(keys)
        if action == 'gaze':
            points = _samples(data.get('points') or [data])
            for p in points:
                self.record_gaze(key, p.get('x'), p.get('y'), p.get('confidence', 1.0),
                                 p.get('pupil_dilation', 0.0), p.get('blink_rate', 15.0), p.get('timestamp'))
            return bool(points)
        if action == 'question_answered' and data.get('start_time') is not None and data.get('end_time') is not None:
            self.record_time_pattern(key, data.get('question_id'), data['start_time'], data['end_time'],
                                     data.get('answer_length', 0), data.get('hesitation_count', 0),
                                     data.get('revision_count', 0))
            return True
        return False

    def analyze(self, key):
        with self._lock:
            buffers = self._buffers.get(key)
            if buffers is None:
                return {'anomaly_score': 0, 'confidence': 0, 'detected_patterns': [], 'risk_level': 'low',
                        'recommendations': [], 'timestamp': now_ms()}
            snapshot = dict((name, list(buf)) for name, buf in buffers.items())

        channels = {
            'mouse': analyze_mouse(snapshot['mouse'], self.config),
            'keystroke': analyze_keystrokes(snapshot['keystroke'], self.config),
            'gaze': analyze_gaze(snapshot['gaze'], self.config),
            'time': analyze_time_patterns(snapshot['time'], self.config),
        }
        score, confidence, patterns = combine(channels, self.config)
        stamp = now_ms()

        coordinated = self._coordinated_patterns(key, snapshot['mouse'], stamp)
        if coordinated:
            patterns.extend(coordinated)
            score = min(100.0, score + 25)

        level = risk_level(score)
        result = {
            'anomaly_score': score,
            'confidence': confidence,
            'detected_patterns': patterns,
            'risk_level': level,
            'recommendations': recommendations_for(patterns, level),
            'timestamp': stamp,
        }
        with self._lock:
            self._last_results[key] = result
        return result

    def _coordinated_patterns(self, key, mouse, stamp):
        exam_id = key[0]
        with self._lock:
            others = [k for k in self._buffers if k[0] == exam_id and k != key]
            last_results = dict((k, self._last_results.get(k)) for k in others)
            other_mouse = dict((k, list(self._buffers[k]['mouse'])) for k in others)

        patterns = []
        synchronized = [k for k, r in last_results.items()
                        if r and abs(r['timestamp'] - stamp) < COORDINATION_WINDOW_MS and r['anomaly_score'] > 70]
        if synchronized:
            patterns.append('coordinated_cheating_detected_%d_sessions' % len(synchronized))

        if len(mouse) >= 10:
            for other_key, samples in other_mouse.items():
                if len(samples) >= 10 and mouse_similarity(mouse, samples) > 0.8:
                    patterns.append('identical_mouse_patterns_user_%s' % other_key[1])
        return patterns

    def claim_alert(self, key, cooldown_ms=ALERT_COOLDOWN_MS):
        """True if an anomaly alert may be raised for this session now."""
        stamp = now_ms()
        with self._lock:
            last = self._alerted.get(key)
            if last is not None and stamp - last < cooldown_ms:
                return False
            self._alerted[key] = stamp
            return True

    def cleanup(self, key):
        with self._lock:
            self._buffers.pop(key, None)
            self._last_results.pop(key, None)
            self._alerted.pop(key, None)

    def stats(self, key):
        buffers = self._buffers.get(key) or {}
        return {
            'mouse_movements': len(buffers.get('mouse', ())),
            'keystrokes': len(buffers.get('keystroke', ())),
            'gaze_points': len(buffers.get('gaze', ())),
            'time_patterns': len(buffers.get('time', ())),
        }
