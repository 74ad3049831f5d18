import threading

from folio.livereload import Broker


def test_publish_reaches_every_subscriber():
    broker = Broker()
    first, second = broker.subscribe(), broker.subscribe()
    assert len(broker) == 2
    assert broker.publish() == 2
    assert first.get_nowait() == "reload"
    assert second.get_nowait() == "reload"


def test_stream_emits_frames_until_closed():
    broker = Broker(keepalive=0.05)
    client = broker.subscribe()
    frames = []

    def consume():
        for frame in broker.stream(client):
            frames.append(frame)

    reader = threading.Thread(target=consume)
    reader.start()
    broker.publish()
    broker.close()
    reader.join(timeout=2)

    assert not reader.is_alive()
    assert frames[0] == b": connected\n\n"
    assert b"data: reload\n\n" in frames


def test_unsubscribe_and_subscribe_after_close():
    broker = Broker()
    client = broker.subscribe()
    broker.unsubscribe(client)
    assert broker.publish() == 0

    broker.close()
    late = broker.subscribe()
    assert list(broker.stream(late)) == [b": connected\n\n"]
