"""Tests for the streaming consumers (network monitor and page classifier)."""
import asyncio
import json

import httpx
import pytest

from conftest import event_stream_response, sse
from core.errors import BackendError
from core.monitors import NetworkMonitorRun, ClassifierBatchRun, PageClassifierView, Progress
from models.events import ProgressEvent, ResultEvent, ErrorEvent, StreamEvent
from models.scan import ScanResult


def stream_handler(*chunks):
    def handler(request):
        return event_stream_response(list(chunks))
    return handler


@pytest.mark.asyncio
async def test_network_monitor_collects_progress_and_result(make_client):
    handler = stream_handler(
        sse('{"type":"progress","phase":"launching","pct":10}'),
        sse('{"type":"progress","phase":"capturing","pct":60}'),
        sse('{"type":"result","result":{"requests":[{"url":"https://a.test/api","status":200}]}}'),
        sse('{"type":"done","pct":100}'),
    )
    seen = []

    async with make_client(handler) as client:
        run = NetworkMonitorRun("https://a.test", on_event=lambda r, e: seen.append(e.type))
        assert run.progress == Progress(phase="starting", pct=5)
        await run.start(client)

    assert run.error is None
    assert run.running is False
    assert run.progress == Progress(phase="capturing", pct=60)
    assert run.result["requests"][0]["status"] == 200
    assert seen == ["progress", "progress", "result"]


@pytest.mark.asyncio
async def test_network_monitor_ignores_events_after_result(make_client):
    handler = stream_handler(sse(
        '{"type":"result","result":{"requests":[]}}',
        '{"type":"progress","phase":"late","pct":99}',
        '{"type":"error","message":"too late"}',
        '{"type":"result","result":{"requests":[1]}}',
    ))

    async with make_client(handler) as client:
        run = await NetworkMonitorRun("https://a.test").start(client)

    assert run.result == {"requests": []}
    assert run.error is None
    assert run.progress.phase == "starting"


@pytest.mark.asyncio
async def test_network_monitor_error_halts_updates_but_drains_stream(make_client):
    drained = []

    async def body():
        yield sse('{"type":"progress","phase":"launching","pct":10}')
        yield sse('{"type":"error","message":"Navigation timeout"}')
        yield sse('{"type":"progress","phase":"capturing","pct":50}')
        drained.append(True)
        yield sse('{"type":"result","result":{"requests":[]}}')
        drained.append(True)

    async with make_client(lambda r: httpx.Response(200, content=body())) as client:
        run = await NetworkMonitorRun("https://a.test").start(client)

    assert run.error == "Navigation timeout"
    assert run.halted is True
    assert run.result is None
    assert run.progress.phase == "launching"
    assert drained == [True, True]


@pytest.mark.asyncio
async def test_network_monitor_transport_failure_sets_error(make_client):
    def handler(request):
        raise httpx.ConnectError("Connection refused")

    async with make_client(handler) as client:
        run = await NetworkMonitorRun("https://a.test").start(client)

    assert "Connection refused" in run.error
    assert run.running is False


@pytest.mark.asyncio
async def test_network_monitor_backend_rejection_sets_error(make_client):
    def handler(request):
        return httpx.Response(400, json={"success": False, "error": "url required"})

    async with make_client(handler) as client:
        run = await NetworkMonitorRun("").start(client)

    assert run.error == "url required"


@pytest.mark.asyncio
async def test_abort_mid_stream_stops_dispatch_without_raising(make_client):
    handler = stream_handler(
        sse('{"type":"progress","phase":"launching","pct":10}'),
        sse('{"type":"progress","phase":"capturing","pct":50}'),
        sse('{"type":"result","result":{"requests":[]}}'),
    )

    def abort_on_first(run, event):
        run.abort()

    async with make_client(handler) as client:
        run = await NetworkMonitorRun("https://a.test", on_event=abort_on_first).start(client)

    assert run.aborted is True
    assert run.progress.phase == "launching"
    assert run.result is None
    assert run.error is None


@pytest.mark.asyncio
async def test_abort_from_another_task_while_waiting_for_chunks(make_client):
    first_sent = asyncio.Event()
    release = asyncio.Event()

    async def body():
        yield sse('{"type":"progress","phase":"launching","pct":10}')
        first_sent.set()
        await release.wait()
        yield sse('{"type":"result","result":{"requests":[]}}')

    async with make_client(lambda r: httpx.Response(200, content=body())) as client:
        run = NetworkMonitorRun("https://a.test")
        task = asyncio.create_task(run.start(client))
        await first_sent.wait()
        run.abort()
        await asyncio.wait_for(task, 1.0)
        release.set()

    assert task.exception() is None
    assert run.result is None
    assert run.running is False


@pytest.mark.asyncio
async def test_abort_closes_a_stream_that_never_sends_again(make_client):
    first_sent = asyncio.Event()
    closed = []

    async def body():
        try:
            yield sse('{"type":"progress","phase":"launching","pct":10}')
            first_sent.set()
            await asyncio.Event().wait()
            yield sse('{"type":"result","result":{"requests":[]}}')
        finally:
            closed.append(True)

    async with make_client(lambda r: httpx.Response(200, content=body())) as client:
        run = NetworkMonitorRun("https://a.test")
        task = asyncio.create_task(run.start(client))
        await first_sent.wait()
        run.abort()
        finished = await asyncio.wait_for(task, 1.0)

    assert finished is run
    assert run.running is False
    assert run.error is None
    assert run.progress.phase == "launching"
    assert closed == [True]


@pytest.mark.asyncio
async def test_network_monitor_keeps_non_object_result_as_sent(make_client):
    handler = stream_handler(sse('{"type":"result","result":["https://a.test/api"]}'))

    async with make_client(handler) as client:
        run = await NetworkMonitorRun("https://a.test").start(client)

    assert run.result == ["https://a.test/api"]
    assert run.finished is True


def test_network_monitor_null_result_still_ends_updates():
    run = NetworkMonitorRun("https://a.test")

    assert run.dispatch(ResultEvent(type="result", result=None)) is True
    assert run.dispatch(ProgressEvent(type="progress", phase="late", pct=99)) is False
    assert run.result is None
    assert run.progress.phase == "starting"


def test_classifier_batch_dispatch_rules():
    pages = {}
    run = ClassifierBatchRun(["https://a.test/", "https://a.test/cart"], pages=pages)
    assert run.progress == Progress(index=0, total=2, url="https://a.test/", pct=0)

    run.dispatch(ProgressEvent(type="progress", index=1, total=2, url="https://a.test/cart", pct=47))
    run.dispatch(ResultEvent(type="result", result={"url": "https://a.test/", "pageType": "home", "confidence": 80}))
    run.dispatch(ErrorEvent(type="error", message="timeout", index=1, url="https://a.test/cart"))
    run.dispatch(ResultEvent(type="result", result={"pageType": "orphan"}))
    run.dispatch(StreamEvent(type="done"))

    assert run.progress.pct == 47
    assert list(pages) == ["https://a.test/"]
    assert run.failures == {"https://a.test/cart": "timeout"}
    assert run.error is None

    run.dispatch(ErrorEvent(type="error", message="classifier crashed"))
    assert run.error == "classifier crashed"
    assert run.dispatch(ResultEvent(type="result", result={"url": "https://a.test/x"})) is False


def test_classifier_result_replaces_page_and_moves_it_last():
    pages = {}
    run = ClassifierBatchRun(["https://a.test/"], pages=pages)

    run.dispatch(ResultEvent(type="result", result={"url": "https://a.test/", "pageType": "home"}))
    run.dispatch(ResultEvent(type="result", result={"url": "https://a.test/b", "pageType": "blog"}))
    run.dispatch(ResultEvent(type="result", result={"url": "https://a.test/", "pageType": "landing"}))

    assert list(pages) == ["https://a.test/b", "https://a.test/"]
    assert pages["https://a.test/"]["pageType"] == "landing"


@pytest.mark.asyncio
async def test_classifier_view_batch_end_to_end(make_client):
    requests = []
    handler = stream_handler(
        sse('{"type":"progress","index":0,"total":2,"url":"https://a.test/","pct":0}'),
        sse('{"type":"result","index":0,"result":{"url":"https://a.test/","pageType":"home","confidence":72}}'),
        sse('{"type":"progress","index":1,"total":2,"url":"https://a.test/login","pct":48}'),
        sse('{"type":"result","index":1,"result":{"url":"https://a.test/login","pageType":"auth","confidence":91}}'),
        sse('{"type":"done","total":2,"pct":100}'),
    )

    async with make_client(handler, requests) as client:
        view = PageClassifierView(client)
        run = await view.classify(["https://a.test/", "https://a.test/login"])

    assert json.loads(requests[0].content) == {"urls": ["https://a.test/", "https://a.test/login"]}
    assert run.progress.pct == 100
    assert [p["pageType"] for p in view.visible_pages("https://a.test")] == ["auth", "home"]
    assert [p["pageType"] for p in view.visible_pages("https://a.test", sort_key="type")] == ["auth", "home"]
    assert view.visible_pages("https://a.test", page_type="home")[0]["url"] == "https://a.test/"


@pytest.mark.asyncio
async def test_new_batch_supersedes_in_flight_batch(make_client):
    release = asyncio.Event()
    first_started = asyncio.Event()
    calls = []

    def handler(request):
        urls = json.loads(request.content)["urls"]
        calls.append(urls)

        async def body():
            if urls == ["https://a.test/old"]:
                first_started.set()
                await release.wait()
            yield sse('{"type":"result","result":{"url":"%s","pageType":"x"}}' % urls[0])

        return httpx.Response(200, content=body())

    async with make_client(handler) as client:
        view = PageClassifierView(client)
        first = asyncio.create_task(view.classify(["https://a.test/old"]))
        await first_started.wait()
        second = await view.classify(["https://a.test/new"])
        first_run = await asyncio.wait_for(first, 1.0)
        release.set()

    assert first_run.aborted is True
    assert view.current is second
    assert list(view.pages) == ["https://a.test/new"]


@pytest.mark.asyncio
async def test_override_patches_local_page(make_client):
    requests = []

    async with make_client(lambda r: httpx.Response(200, json={"success": True}), requests) as client:
        view = PageClassifierView(client)
        view.pages["https://a.test/p"] = {"url": "https://a.test/p", "pageType": "blog", "confidence": 40}
        page = await view.override("https://a.test/p", "product")

    assert page == {"url": "https://a.test/p", "pageType": "product", "confidence": 100, "overridden": True}
    assert view.pages["https://a.test/p"]["overridden"] is True
    assert requests[0].method == "PATCH"


@pytest.mark.asyncio
async def test_failed_override_leaves_page_untouched(make_client):
    def handler(request):
        return httpx.Response(404, json={"success": False, "error": "Page not found in store"})

    async with make_client(handler) as client:
        view = PageClassifierView(client)
        view.pages["https://a.test/p"] = {"url": "https://a.test/p", "pageType": "blog"}
        with pytest.raises(BackendError, match="Page not found"):
            await view.override("https://a.test/p", "product")

    assert view.pages["https://a.test/p"] == {"url": "https://a.test/p", "pageType": "blog"}


@pytest.mark.asyncio
async def test_delete_drops_local_page(make_client):
    async with make_client(lambda r: httpx.Response(200, json={"success": True})) as client:
        view = PageClassifierView(client)
        view.pages["https://a.test/p"] = {"url": "https://a.test/p"}
        await view.delete("https://a.test/p")

    assert view.pages == {}


def test_visible_pages_filters_other_hosts():
    view = PageClassifierView(client=None)
    view.pages = {
        "https://a.test/": {"url": "https://a.test/", "confidence": 10},
        "https://b.test/": {"url": "https://b.test/", "confidence": 99},
        "broken": {"url": "not a url"},
        "bad-ipv6": {"url": "http://[bad/"},
        "missing": {"pageType": "home"},
    }

    assert [p["url"] for p in view.visible_pages("https://a.test/home")] == ["https://a.test/"]
    assert view.visible_pages("") == []
    assert view.visible_pages("http://[bad/") == []
    with pytest.raises(ValueError):
        view.visible_pages("https://a.test", sort_key="size")


def test_urls_for_prefers_scan_pages():
    result = ScanResult.from_dict({"success": True, "pages": [{"url": "https://a.test/"}, {"url": "https://a.test/b"}, {}]})

    assert PageClassifierView.urls_for(result, "https://a.test") == ["https://a.test/", "https://a.test/b"]
    assert PageClassifierView.urls_for(None, "https://a.test") == ["https://a.test"]
    assert PageClassifierView.urls_for(ScanResult.from_dict({}), "") == []
