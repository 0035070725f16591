import unittest
from unittest.mock import Mock, call

from hamcrest import assert_that, is_, empty

from tcpbridge.support.events import EventSource


class EventsTest(unittest.TestCase):

    def test_handlers_empty(self):
        sut = EventSource()
        assert_that(sut.handlers(), is_(empty()))
        assert_that(len(sut), is_(0))

    def test_handlers_not_empty(self):
        sut = EventSource()
        handler = Mock()
        sut.add(handler)
        assert_that(list(sut.handlers()), is_([handler]))

    def test_no_listeners(self):
        sut = EventSource()
        sut.fire(1)

    def test_manage_handlers(self):
        sut = EventSource()
        m1 = Mock()
        sut.add(m1)
        assert_that(sut._handlers, is_([m1]))

        sut.remove(m1)
        assert_that(sut._handlers, is_([]))

        sut.remove(m1)
        assert_that(sut._handlers, is_([]))

        sut += m1
        assert_that(sut._handlers, is_([m1]))

        sut -= m1
        assert_that(sut._handlers, is_([]))

    def test_clear(self):
        sut = EventSource()
        sut += Mock()
        sut += Mock()
        sut.clear()
        assert_that(len(sut), is_(0))

    def test_listeners(self):
        sut = EventSource()
        l1 = Mock()
        l2 = Mock()
        sut += l1
        sut += l2
        sut.fire(1, v="hey")
        l1.assert_called_once_with(1, v="hey")
        l2.assert_called_once_with(1, v="hey")

        l1.reset_mock()
        sut.fire_all([1, 2, 3])
        l1.assert_has_calls([call(1), call(2), call(3)])

    def test_handler_can_remove_itself_while_firing(self):
        sut = EventSource()
        calls = []

        def once(event):
            calls.append(event)
            sut.remove(once)

        other = Mock()
        sut += once
        sut += other
        sut.fire(1)
        sut.fire(2)
        assert_that(calls, is_([1]))
        other.assert_has_calls([call(1), call(2)])

    def test_handler_removed_while_firing_is_not_called(self):
        sut = EventSource()
        later = Mock()
        sut += lambda event: sut.remove(later)
        sut += later
        sut.fire(1)
        later.assert_not_called()


if __name__ == '__main__':  # pragma no cover
    unittest.main()
