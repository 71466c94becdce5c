import threading

from clamd_mock.clamd.session import Session, SessionCounter


def test_counter_increasing():
    counter = SessionCounter()

    assert counter.next_id() == 1
    assert counter.next_id() == 2
    assert counter.next_id() == 3


def test_counter_unique_across_threads():
    counter = SessionCounter()
    ids = []
    lock = threading.Lock()

    def draw():
        drawn = [counter.next_id() for _ in range(1000)]
        with lock:
            ids.extend(drawn)

    threads = [threading.Thread(target=draw) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(set(ids)) == 8000
    assert max(ids) == 8000


def test_session():
    counter = SessionCounter()
    session = Session()
    assert not session.active

    assert session.start(counter) == 1
    assert session.active
    assert session.id == 1

    # a new IDSESSION draws a fresh id
    assert session.start(counter) == 2
