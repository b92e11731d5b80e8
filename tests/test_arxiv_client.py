import httpx
import pytest

from services.arxiv_client import (
    ArxivClient,
    Throttle,
    build_search_query,
    paper_id_from_entry_id,
    parse_feed,
)
from services.errors import ProviderError
from services.retry import RetryPolicy
from helpers import FakeClock

ATOM_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom" xmlns:arxiv="http://arxiv.org/schemas/atom">
  <title>ArXiv Query</title>
  <entry>
    <id>http://arxiv.org/abs/2401.12345v2</id>
    <published>2024-01-22T18:00:00Z</published>
    <title>Attention Is
      Still All You Need</title>
    <summary>  We revisit attention.
    It works.  </summary>
    <author><name>Ada Lovelace</name></author>
    <author><name>Alan Turing</name></author>
    <link href="http://arxiv.org/abs/2401.12345v2" rel="alternate" type="text/html"/>
    <link title="pdf" href="http://arxiv.org/pdf/2401.12345v2" rel="related" type="application/pdf"/>
    <category term="cs.CL" scheme="http://arxiv.org/schemas/atom"/>
    <category term="cs.LG" scheme="http://arxiv.org/schemas/atom"/>
  </entry>
  <entry>
    <id>http://arxiv.org/abs/hep-th/9901001v1</id>
    <published>1999-01-01T00:00:00Z</published>
    <title>Old Strings</title>
    <summary>Classic.</summary>
    <author><name>Ed Witten</name></author>
  </entry>
</feed>
"""

ERROR_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <entry>
    <id>http://arxiv.org/api/errors#incorrect_id_format_for_1234</id>
    <title>Error</title>
    <summary>incorrect id format for 1234</summary>
  </entry>
</feed>
"""

NO_RETRY = RetryPolicy(max_attempts=1)


def make_client(handler, retry_policy=NO_RETRY):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

    async def no_sleep(seconds):
        return None

    return ArxivClient("https://export.arxiv.org/api/query", client=client,
                       throttle=Throttle(0, sleep=no_sleep), retry_policy=retry_policy)


def test_build_search_query():
    assert build_search_query("transformers") == "all:transformers"
    assert build_search_query("  graph   neural nets ") == 'all:"graph neural nets"'
    assert build_search_query("llm", "cs.CL") == "all:llm AND cat:cs.CL"


def test_paper_id_from_entry_id():
    assert paper_id_from_entry_id("http://arxiv.org/abs/2401.12345v2") == "2401.12345"
    assert paper_id_from_entry_id("http://arxiv.org/abs/hep-th/9901001v1") == "hep-th/9901001"


def test_parse_feed():
    papers = parse_feed(ATOM_FEED)

    assert [p.paper_id for p in papers] == ["2401.12345", "hep-th/9901001"]
    first = papers[0]
    assert first.title == "Attention Is Still All You Need"
    assert first.summary == "We revisit attention. It works."
    assert first.authors == ["Ada Lovelace", "Alan Turing"]
    assert first.categories == ["cs.CL", "cs.LG"]
    assert first.published_date == "2024-01-22"
    assert first.link == "http://arxiv.org/abs/2401.12345v2"


def test_parse_feed_error_entry():
    with pytest.raises(ProviderError, match="incorrect id format"):
        parse_feed(ERROR_FEED)


async def test_search_sends_query_parameters():
    seen = {}

    def handler(request):
        seen.update(request.url.params)
        return httpx.Response(200, text=ATOM_FEED)

    client = make_client(handler)
    papers = await client.search("Deep Learning", "cs.LG", offset=5, limit=2)

    assert len(papers) == 2
    assert seen["search_query"] == 'all:"Deep Learning" AND cat:cs.LG'
    assert seen["start"] == "5"
    assert seen["max_results"] == "2"
    assert seen["sortBy"] == "submittedDate"
    await client.close()


async def test_search_http_error_raises_provider_error():
    client = make_client(lambda request: httpx.Response(404, text="not found"))

    with pytest.raises(ProviderError) as exc_info:
        await client.search("anything")
    assert exc_info.value.status_code == 404


async def test_search_retries_server_errors():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, text=ATOM_FEED)

    client = make_client(handler, RetryPolicy(max_attempts=3, initial_delay=0, jitter=0))
    papers = await client.search("transformers")

    assert len(calls) == 3
    assert len(papers) == 2


async def test_search_network_error_raises_provider_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    with pytest.raises(ProviderError, match="connection refused"):
        await client.search("anything")


async def test_throttle_waits_for_min_interval():
    clock = FakeClock()
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds)

    throttle = Throttle(3.0, clock=clock, sleep=fake_sleep)

    await throttle.wait()
    assert throttle.can_proceed() is False
    clock.advance(1)
    await throttle.wait()

    assert sleeps == [2.0]
    assert throttle.pending == 0
