class EventSource(object):
    """
    A list of handlers that are each called with the arguments passed to fire().

    Handlers may add or remove handlers (including themselves) while an event is being fired.
    A handler removed during a fire() is not called for the remainder of that fire().
    """

    def __init__(self):
        self._handlers = []

    def __iadd__(self, handler):
        return self.add(handler)

    def __isub__(self, handler):
        return self.remove(handler)

    def __len__(self):
        return len(self._handlers)

    def add(self, handler):
        self._handlers.append(handler)
        return self

    def remove(self, handler):
        if handler in self._handlers:
            self._handlers.remove(handler)
        return self

    def clear(self):
        self._handlers = []

    def handlers(self):
        return tuple(self._handlers)

    def fire(self, *args, **kwargs):
        for handler in self.handlers():
            if handler in self._handlers:
                handler(*args, **kwargs)

    def fire_all(self, events):
        for e in events:
            self.fire(e)
