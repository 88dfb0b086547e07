"""이벤트 발행 테스트"""

from channelwatch.delivery.events import DOWNLOAD_COMPLETE, EventEmitter


class TestEventEmitter:
    """EventEmitter 테스트"""

    def test_subscribe_and_emit(self):
        emitter = EventEmitter()
        received = []
        emitter.subscribe(lambda event, payload: received.append((event, payload)))

        emitter.emit(DOWNLOAD_COMPLETE, {"task_id": "dl_1"})
        assert received == [(DOWNLOAD_COMPLETE, {"task_id": "dl_1"})]

    def test_unsubscribe(self):
        emitter = EventEmitter()
        received = []
        unsubscribe = emitter.subscribe(lambda event, payload: received.append(event))
        unsubscribe()
        unsubscribe()

        emitter.emit(DOWNLOAD_COMPLETE, {})
        assert received == []

    def test_listener_error_isolated(self):
        """구독자 오류는 다른 구독자와 발행 측에 영향 없음"""
        emitter = EventEmitter()
        received = []

        def broken(event, payload):
            raise RuntimeError("boom")

        emitter.subscribe(broken)
        emitter.subscribe(lambda event, payload: received.append(event))

        emitter.emit(DOWNLOAD_COMPLETE, {})
        assert received == [DOWNLOAD_COMPLETE]
