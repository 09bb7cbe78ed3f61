import subprocess
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from extensions.eda.plugins.event_source.snmp_trap import (
    SNMPTRANSLATE_ARGS,
    LRUOidCache,
    MibEntry,
    OidCache,
    OidResolver,
    ResolutionError,
    SnmpTranslate,
    parse_mib_entry,
    run_command,
)

LINK_DOWN = ".1.3.6.1.6.3.1.1.5.3"


class CountingRunner:
    """Stands in for run_command, returning canned snmptranslate output."""

    def __init__(self, output: bytes = b"IF-MIB::linkDown\n", delay: float = 0.0) -> None:
        self.output = output
        self.delay = delay
        self.calls: list[tuple[str, ...]] = []
        self._lock = threading.Lock()

    def __call__(self, timeout: float, *argv: str) -> bytes:
        with self._lock:
            self.calls.append(argv)
        if self.delay:
            time.sleep(self.delay)
        return self.output


def test_parse_mib_entry() -> None:
    entry = parse_mib_entry(LINK_DOWN, b"IF-MIB::linkDown   \nlinkDown NOTIFICATION-TYPE\n")

    assert entry == MibEntry("IF-MIB", "linkDown")


def test_parse_mib_entry_keeps_remainder_after_first_separator() -> None:
    entry = parse_mib_entry(".1.2", b"A-MIB::b::c\n")

    assert entry == MibEntry("A-MIB", "b::c")


@pytest.mark.parametrize("output", [b"", b".1.3.6.1.4.1.99999\n", b"\nIF-MIB::linkDown\n"])
def test_parse_mib_entry_not_found(output: bytes) -> None:
    with pytest.raises(ResolutionError) as exc_info:
        parse_mib_entry(".1.3.6.1.4.1.99999", output)

    assert exc_info.value.reason == ResolutionError.NOT_FOUND
    assert exc_info.value.oid == ".1.3.6.1.4.1.99999"


def test_snmptranslate_invocation() -> None:
    runner = CountingRunner()
    translate = SnmpTranslate(timeout=2.5, run_cmd=runner)

    assert translate(LINK_DOWN) == MibEntry("IF-MIB", "linkDown")
    assert runner.calls == [("snmptranslate", *SNMPTRANSLATE_ARGS, LINK_DOWN)]


def test_snmptranslate_timeout() -> None:
    def run_cmd(timeout: float, *argv: str) -> bytes:
        raise subprocess.TimeoutExpired(list(argv), timeout)

    with pytest.raises(ResolutionError) as exc_info:
        SnmpTranslate(timeout=0.1, run_cmd=run_cmd)(LINK_DOWN)

    assert exc_info.value.reason == ResolutionError.TIMEOUT


@pytest.mark.parametrize(
    "error",
    [
        FileNotFoundError(2, "No such file or directory", "snmptranslate"),
        subprocess.CalledProcessError(1, ["snmptranslate"]),
    ],
)
def test_snmptranslate_exec_failure(error: Exception) -> None:
    def run_cmd(timeout: float, *argv: str) -> bytes:
        raise error

    with pytest.raises(ResolutionError) as exc_info:
        SnmpTranslate(run_cmd=run_cmd)(LINK_DOWN)

    assert exc_info.value.reason == ResolutionError.EXEC


def test_snmptranslate_missing_program() -> None:
    translate = SnmpTranslate(timeout=1, program="snmptranslate-does-not-exist")

    with pytest.raises(ResolutionError) as exc_info:
        translate(LINK_DOWN)

    assert exc_info.value.reason == ResolutionError.EXEC


def test_run_command() -> None:
    output = run_command(5, sys.executable, "-c", "print('IF-MIB::linkDown')")

    assert output.strip() == b"IF-MIB::linkDown"


def test_run_command_timeout() -> None:
    with pytest.raises(subprocess.TimeoutExpired):
        run_command(0.2, sys.executable, "-c", "import time; time.sleep(5)")


def test_cache_hit_does_not_translate() -> None:
    runner = CountingRunner()
    resolver = OidResolver(SnmpTranslate(run_cmd=runner))

    first = resolver.resolve(LINK_DOWN)
    second = resolver.resolve(LINK_DOWN)

    assert first == second == MibEntry("IF-MIB", "linkDown")
    assert len(runner.calls) == 1
    assert len(resolver) == 1


def test_concurrent_misses_translate_once() -> None:
    runner = CountingRunner(delay=0.05)
    resolver = OidResolver(SnmpTranslate(run_cmd=runner))
    barrier = threading.Barrier(8)

    def lookup() -> MibEntry:
        barrier.wait()
        return resolver.resolve(LINK_DOWN)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: lookup(), range(8)))

    assert len(runner.calls) == 1
    assert all(r == MibEntry("IF-MIB", "linkDown") for r in results)


def test_timeout_leaves_oid_unresolved() -> None:
    """A timed-out translation is retried on the next lookup."""
    attempts: list[str] = []

    def translator(oid: str) -> MibEntry:
        attempts.append(oid)
        if len(attempts) == 1:
            raise ResolutionError(oid, ResolutionError.TIMEOUT)
        return MibEntry("IF-MIB", "linkDown")

    resolver = OidResolver(translator)

    with pytest.raises(ResolutionError):
        resolver.resolve(LINK_DOWN)
    assert len(resolver) == 0

    assert resolver.resolve(LINK_DOWN) == MibEntry("IF-MIB", "linkDown")
    assert attempts == [LINK_DOWN, LINK_DOWN]


def test_real_timeout_surfaces_as_resolution_error() -> None:
    def slow(timeout: float, *argv: str) -> bytes:
        return run_command(timeout, sys.executable, "-c", "import time; time.sleep(5)")

    resolver = OidResolver(SnmpTranslate(timeout=0.2, run_cmd=slow))

    with pytest.raises(ResolutionError) as exc_info:
        resolver.resolve(LINK_DOWN)

    assert exc_info.value.reason == ResolutionError.TIMEOUT
    assert len(resolver) == 0


def test_preload_and_clear() -> None:
    runner = CountingRunner()
    resolver = OidResolver(SnmpTranslate(run_cmd=runner))

    resolver.preload(LINK_DOWN, MibEntry("IF-MIB", "linkDown"))
    assert resolver.resolve(LINK_DOWN) == MibEntry("IF-MIB", "linkDown")
    assert runner.calls == []

    resolver.clear()
    assert len(resolver) == 0
    resolver.resolve(LINK_DOWN)
    assert len(runner.calls) == 1


def test_unbounded_cache() -> None:
    cache = OidCache()
    for i in range(100):
        cache.put(f".1.{i}", MibEntry("X-MIB", f"n{i}"))

    assert len(cache) == 100
    assert cache.get(".1.0") == MibEntry("X-MIB", "n0")
    assert cache.get(".1.100") is None


def test_lru_cache_evicts_least_recently_used() -> None:
    cache = LRUOidCache(2)
    cache.put(".1.1", MibEntry("X-MIB", "one"))
    cache.put(".1.2", MibEntry("X-MIB", "two"))

    # touch .1.1 so .1.2 becomes the eviction candidate
    assert cache.get(".1.1") is not None
    cache.put(".1.3", MibEntry("X-MIB", "three"))

    assert len(cache) == 2
    assert cache.get(".1.2") is None
    assert cache.get(".1.1") == MibEntry("X-MIB", "one")
    assert cache.get(".1.3") == MibEntry("X-MIB", "three")


def test_lru_cache_rejects_non_positive_size() -> None:
    with pytest.raises(ValueError):
        LRUOidCache(0)


def test_resolver_with_lru_cache_retranslates_evicted() -> None:
    runner = CountingRunner()
    resolver = OidResolver(SnmpTranslate(run_cmd=runner), LRUOidCache(1))

    resolver.resolve(".1.1")
    resolver.resolve(".1.2")
    resolver.resolve(".1.1")

    assert [call[-1] for call in runner.calls] == [".1.1", ".1.2", ".1.1"]
