"""
Per-application log fan-out
Backend events and container log lines go into one bounded queue per app,
drained by Server-Sent Events subscribers
"""
import json
import queue
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

_ESCAPES = {
    '\n': '\\n',
    '\r': '\\r',
    '\t': '\\t',
    '\b': '\\b',
    '\f': '\\f',
    '"': '\\"',
}


def sanitize(text):
    """Escape whitespace controls and quotes, drop other control characters"""
    if text is None:
        return ''
    out = []
    for ch in str(text):
        if ch in _ESCAPES:
            out.append(_ESCAPES[ch])
        elif ord(ch) < 32:
            continue
        else:
            out.append(ch)
    return ''.join(out)


def _now():
    return datetime.now(timezone.utc).isoformat()


def log_message(msg_type, message):
    return {'type': msg_type, 'message': sanitize(message), 'timestamp': _now()}


def event_message(app_id, event):
    data = dict(event.metadata)
    data.update({
        'app_id': app_id,
        'container_id': event.container_id,
        'runtime': getattr(event.runtime, 'value', event.runtime),
    })
    return {
        'type': 'docker_event',
        'event': event.type,
        'message': sanitize(event.message),
        'data': data,
        'time': event.timestamp.isoformat(),
    }


def sse_frame(payload):
    return f"data: {json.dumps(payload, default=str)}\n\n"


class ReadWriteLock:
    """Many readers or one writer"""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read_locked(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class _Channel:
    def __init__(self, size):
        self.queue = queue.Queue(maxsize=size)
        self.subscribers = 0
        self.tailer = None


class _LogTailer(threading.Thread):
    """Follows a container's output and publishes each line"""

    def __init__(self, broker, app_id, runtime, container_id):
        super().__init__(name=f"log-tail-{app_id}", daemon=True)
        self.broker = broker
        self.app_id = app_id
        self.runtime = runtime
        self.container_id = container_id
        self._halt = threading.Event()
        self._stream = None

    def run(self):
        try:
            self._stream = self.runtime.get_container_logs(self.container_id, follow=True)
            if self._halt.is_set():
                return
            buffer = b''
            for chunk in self._stream:
                if self._halt.is_set():
                    break
                if isinstance(chunk, str):
                    chunk = chunk.encode('utf-8')
                buffer += chunk
                *lines, buffer = buffer.split(b'\n')
                for line in lines:
                    self._emit(line)
            if buffer and not self._halt.is_set():
                self._emit(buffer)
        except Exception as e:
            if not self._halt.is_set():
                logger.warning(f"⚠️ Log tail for {self.app_id} ended: {str(e)}")
                self.broker.publish_log(self.app_id, 'warning', f"Container log stream ended: {str(e)}")
        finally:
            self._close_stream()

    def _emit(self, line):
        text = line.decode('utf-8', errors='replace').rstrip('\r')
        if text:
            self.broker.publish_log(self.app_id, 'log', text)

    def _close_stream(self):
        closer = getattr(self._stream, 'close', None)
        if closer:
            try:
                closer()
            except Exception as e:
                logger.debug(f"Closing log stream for {self.app_id}: {str(e)}")

    def stop(self):
        self._halt.set()
        self._close_stream()


class LogSubscription:
    """One connected observer of an application's channel"""

    def __init__(self, broker, app_id, channel):
        self.broker = broker
        self.app_id = app_id
        self.channel = channel
        self.active = True

    def get(self, timeout):
        return self.channel.queue.get(timeout=timeout)

    def close(self):
        if self.active:
            self.active = False
            self.broker._release(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class LogBroker:
    """Registry of per-application channels guarded by a read/write lock"""

    def __init__(self, queue_size=100, keepalive=15):
        self.queue_size = queue_size
        self.keepalive = keepalive
        self._channels = {}
        self._lock = ReadWriteLock()

    def subscribe(self, app_id):
        with self._lock.write_locked():
            channel = self._channels.get(app_id)
            if channel is None:
                channel = _Channel(self.queue_size)
                self._channels[app_id] = channel
                logger.info(f"📡 Log channel opened for {app_id}")
            channel.subscribers += 1
        return LogSubscription(self, app_id, channel)

    def _release(self, subscription):
        tailer = None
        with self._lock.write_locked():
            channel = self._channels.get(subscription.app_id)
            if channel is not subscription.channel:
                return
            channel.subscribers -= 1
            if channel.subscribers <= 0:
                del self._channels[subscription.app_id]
                tailer = channel.tailer
                logger.info(f"📴 Log channel closed for {subscription.app_id}")
        if tailer:
            tailer.stop()

    def has_channel(self, app_id):
        with self._lock.read_locked():
            return app_id in self._channels

    def publish(self, app_id, payload):
        """Non-blocking; returns False when nobody listens or the queue is full"""
        with self._lock.read_locked():
            channel = self._channels.get(app_id)
            if channel is None:
                return False
            try:
                channel.queue.put_nowait(payload)
                return True
            except queue.Full:
                logger.debug(f"Log queue full for {app_id}, dropping message")
                return False

    def publish_log(self, app_id, msg_type, message):
        return self.publish(app_id, log_message(msg_type, message))

    def publish_event(self, app_id, event):
        return self.publish(app_id, event_message(app_id, event))

    def event_callback(self, app_id):
        """Adapter event callback that re-tags events with the owning app"""
        def _forward(event):
            self.publish_event(app_id, event)
        return _forward

    def start_tail(self, subscription, runtime, container_id):
        """Start following container output unless the channel already does"""
        channel = subscription.channel
        with self._lock.write_locked():
            if not subscription.active or channel.tailer is not None:
                return None
            tailer = _LogTailer(self, subscription.app_id, runtime, container_id)
            channel.tailer = tailer
        tailer.start()
        return tailer

    def stream(self, app_id, runtime=None, container_id=None):
        """SSE generator; tears the subscription down when the client goes away"""
        subscription = self.subscribe(app_id)
        try:
            yield sse_frame({'type': 'connected', 'app_id': app_id, 'timestamp': _now()})
            if runtime is not None and container_id:
                self.start_tail(subscription, runtime, container_id)
            while True:
                try:
                    payload = subscription.get(self.keepalive)
                except queue.Empty:
                    yield ': keep-alive\n\n'
                    continue
                yield sse_frame(payload)
        finally:
            subscription.close()
