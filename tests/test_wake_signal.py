from __future__ import annotations

import threading
import time

import allure

from branch_deployer.deploy.wake import WakeSignal

pytestmark = [
    allure.epic("Deploy Queue"),
    allure.feature("Wake Signal"),
]


def test_wait_times_out_without_notification() -> None:
    signal = WakeSignal()

    started = time.monotonic()
    assert signal.wait(timeout=0.05) is False
    assert time.monotonic() - started >= 0.04


def test_notification_before_wait_is_not_lost() -> None:
    signal = WakeSignal()
    signal.notify()

    assert signal.is_pending is True
    assert signal.wait(timeout=5) is True
    assert signal.is_pending is False


def test_repeated_notifications_coalesce_into_one_wake() -> None:
    signal = WakeSignal()
    for _ in range(10):
        signal.notify()

    assert signal.wait(timeout=1) is True
    assert signal.wait(timeout=0.01) is False


def test_notify_wakes_a_blocked_waiter() -> None:
    signal = WakeSignal()
    results: list[bool] = []

    waiter = threading.Thread(target=lambda: results.append(signal.wait(timeout=10)))
    waiter.start()
    time.sleep(0.05)
    started = time.monotonic()
    signal.notify()
    waiter.join(timeout=5)

    assert results == [True]
    assert time.monotonic() - started < 5
