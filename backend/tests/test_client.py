from socketio.exceptions import ConnectionError as SocketConnectionError

from quizlive.client import LiveClient, ReconnectPolicy


class FakeSio:
    """Stands in for ``socketio.Client``; fails the first ``failures`` connects."""

    def __init__(self, failures=0):
        self.failures = failures
        self.connected = False
        self.handlers = {}
        self.emitted = []
        self.connect_calls = 0
        self.tasks = []

    def on(self, event, handler=None, namespace=None):
        self.handlers[(event, namespace)] = handler

    def connect(self, url, namespaces=None):
        self.connect_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise SocketConnectionError('refused')
        self.connected = True
        self.handlers[('connect', namespaces[0])]()

    def disconnect(self):
        self.connected = False

    def drop(self, reason='transport close'):
        self.connected = False
        self.handlers[('disconnect', '/ws')](reason)

    def emit(self, event, data=None, namespace=None):
        self.emitted.append((event, data))

    def deliver(self, event, data):
        self.handlers[(event, '/ws')](data)

    def start_background_task(self, target, *args):
        self.tasks.append(target.__name__)
        return target(*args)

    def sleep(self, seconds):
        self.connected = False


def _client(sio, **kwargs):
    delays = []
    kwargs.setdefault('heartbeat_sec', 0)
    live = LiveClient('http://quiz.test', 'sess-1', name='Alice', sio=sio, sleep=delays.append, **kwargs)
    return live, delays


def test_policy_backs_off_exponentially():
    policy = ReconnectPolicy()
    assert [d for _, d in policy.delays()] == [2.0, 4.0, 8.0, 16.0, 30.0]
    assert ReconnectPolicy(attempts=2, base_delay=1).delay(2) == 2


def test_connect_joins_session():
    sio = FakeSio()
    live, _ = _client(sio)
    assert live.connect() is True
    assert sio.emitted == [('join_session', {'sessionId': 'sess-1', 'name': 'Alice'})]


def test_session_joined_remembers_participant():
    sio = FakeSio()
    live, _ = _client(sio)
    seen = []
    live.on('session_joined', seen.append)
    live.connect()
    sio.deliver('session_joined', {'participant': {'id': 'p-9'}, 'session': {'status': 'waiting'}})
    assert live.participant_id == 'p-9'
    assert live.last_state == {'status': 'waiting'}
    assert seen[0]['participant']['id'] == 'p-9'


def test_retries_until_connected():
    sio = FakeSio(failures=2)
    live, delays = _client(sio)
    attempts = []
    live.on('reconnecting', attempts.append)
    assert live.connect() is True
    assert delays == [2.0, 4.0]
    assert [a['attempt'] for a in attempts] == [1, 2]
    assert sio.connect_calls == 3


def test_gives_up_and_publishes_connection_failed():
    sio = FakeSio(failures=100)
    live, delays = _client(sio)
    failed = []
    live.on('connection_failed', failed.append)
    assert live.connect() is False
    assert failed == [{'attempts': 5}]
    assert len(delays) == 5
    assert sio.connect_calls == 6


def test_rejoins_with_same_participant_after_drop():
    sio = FakeSio()
    live, _ = _client(sio)
    live.connect()
    sio.deliver('session_joined', {'participant': {'id': 'p-9'}})
    sio.emitted.clear()
    sio.drop()
    assert live.connected is True
    assert sio.emitted == [('join_session', {'sessionId': 'sess-1', 'name': 'Alice', 'participantId': 'p-9'})]


def test_explicit_disconnect_does_not_reconnect():
    sio = FakeSio()
    live, _ = _client(sio)
    live.connect()
    live.disconnect()
    assert sio.connect_calls == 1
    assert not live.connected


def test_heartbeat_pings_while_connected():
    sio = FakeSio()
    live, _ = _client(sio, heartbeat_sec=25)
    live.connect()
    assert '_heartbeat' in sio.tasks
    assert sio.emitted[1][0] == 'ping'


def test_actions_emit_wire_events():
    sio = FakeSio()
    live, _ = _client(sio, participant_id='p-1')
    live.connect()
    live.submit_answer(0, 'Paris')
    live.request_leaderboard(5)
    live.leave()
    names = [name for name, _ in sio.emitted]
    assert names == ['join_session', 'submit_answer', 'request_leaderboard', 'leave_session']
    answer = sio.emitted[1][1]
    assert (answer['participantId'], answer['questionIndex'], answer['answer']) == ('p-1', 0, 'Paris')
    assert sio.emitted[2][1] == {'sessionId': 'sess-1', 'limit': 5}


def test_failing_subscriber_does_not_stop_others():
    sio = FakeSio()
    live, _ = _client(sio)
    seen = []

    def boom(payload):
        raise RuntimeError('handler failed')

    live.on('pong', boom)
    live.on('pong', seen.append)
    live.connect()
    sio.deliver('pong', {})
    assert seen == [{}]
