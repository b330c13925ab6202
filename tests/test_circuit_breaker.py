import threading

from memory_layer.storage.circuit_breaker import CLOSED, OPEN, RESET_DUE, StoreCircuitBreaker


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_trips_after_threshold_consecutive_failures():
    breaker = StoreCircuitBreaker(failure_threshold=5, cooldown_seconds=10, clock=FakeClock())
    tripped = [breaker.record_failure("OperationalError") for _ in range(5)]
    assert tripped == [False, False, False, False, True]
    assert breaker.is_open()
    assert breaker.check() == OPEN


def test_success_resets_consecutive_count():
    breaker = StoreCircuitBreaker(failure_threshold=3, cooldown_seconds=10, clock=FakeClock())
    breaker.record_failure("e")
    breaker.record_failure("e")
    breaker.record_success()
    breaker.record_failure("e")
    assert not breaker.is_open()
    assert breaker.status()["consecutive_failures"] == 1


def test_only_one_caller_gets_the_reset_after_cooldown():
    clock = FakeClock()
    breaker = StoreCircuitBreaker(failure_threshold=1, cooldown_seconds=10, clock=clock)
    breaker.record_failure("e")

    clock.now += 9.9
    assert breaker.check() == OPEN

    clock.now += 0.2
    assert breaker.check() == RESET_DUE
    assert breaker.check() == OPEN

    breaker.complete_reset(True)
    assert breaker.check() == CLOSED
    assert breaker.status()["consecutive_failures"] == 0


def test_failed_reset_restarts_cooldown():
    clock = FakeClock()
    breaker = StoreCircuitBreaker(failure_threshold=1, cooldown_seconds=10, clock=clock)
    breaker.record_failure("e")
    clock.now += 11
    assert breaker.check() == RESET_DUE
    breaker.complete_reset(False)

    assert breaker.check() == OPEN
    clock.now += 10
    assert breaker.check() == RESET_DUE


def test_concurrent_checks_hand_out_a_single_reset():
    clock = FakeClock()
    breaker = StoreCircuitBreaker(failure_threshold=1, cooldown_seconds=1, clock=clock)
    breaker.record_failure("e")
    clock.now += 2

    results = []
    lock = threading.Lock()

    def worker():
        state = breaker.check()
        with lock:
            results.append(state)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(RESET_DUE) == 1
    assert results.count(OPEN) == 19


def test_status_reports_trip_details():
    breaker = StoreCircuitBreaker(failure_threshold=2, cooldown_seconds=10, clock=FakeClock(50.0))
    breaker.record_failure("InterfaceError")
    breaker.record_failure("InterfaceError")
    status = breaker.status()
    assert status["open"] is True
    assert status["trip_count"] == 1
    assert status["last_error"] == "InterfaceError"
    assert status["cooldown_until_epoch"] == 60
