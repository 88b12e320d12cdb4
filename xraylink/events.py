class EventHub:
    """Explicit observer registry: listeners run synchronously, in order."""

    def __init__(self):
        self._listeners = {}

    def subscribe(self, event, callback):
        self._listeners.setdefault(event, []).append(callback)
        return callback

    def unsubscribe(self, event, callback):
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def emit(self, event, *args):
        for callback in list(self._listeners.get(event, ())):
            callback(*args)
