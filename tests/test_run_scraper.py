from __future__ import annotations

import asyncio
import csv
import json

from backend.listings.errors import ExtractionError, UnsupportedSourceError
from backend.listings import run_scraper
from backend.listings.service import ListingLookup
from backend.py_models.listing import ListingRecord, SourceSite

GOOD = "https://www.centris.ca/en/condos~for-sale~montreal/12345678"
BAD = "https://www.centris.ca/en/condos~for-sale~montreal/99999999"


class FakeService:
    def __init__(self) -> None:
        self.closed = False
        self.calls: list = []

    async def get_listing(self, url, address_hint="", refresh=False) -> ListingLookup:
        self.calls.append((url, address_hint, refresh))
        if url == BAD:
            raise ExtractionError(url, [])
        if "example.com" in url:
            raise UnsupportedSourceError(url)
        record = ListingRecord(
            source_url=url,
            source_site=SourceSite.CENTRIS,
            price="$579,000",
            bedroom_count=3,
            bathroom_count=1.5,
            living_area="912 ft²",
        )
        return ListingLookup(record, cached=False)

    async def close(self) -> None:
        self.closed = True


def test_cli_saves_json(tmp_path, capsys) -> None:
    out = tmp_path / "listings.json"
    service = FakeService()
    code = asyncio.run(run_scraper.main([GOOD, "--hint", "12 Rue X", "--output", str(out), "--print-details"], service=service))
    assert code == 0
    assert service.closed
    assert service.calls == [(GOOD, "12 Rue X", False)]
    rows = json.loads(out.read_text(encoding="utf-8"))
    assert rows[0]["sourceUrl"] == GOOD
    assert rows[0]["price"] == "$579,000"
    printed = capsys.readouterr().out
    assert "3 bd / 1.5 ba" in printed
    assert "912 ft²" in printed


def test_cli_saves_csv(tmp_path) -> None:
    out = tmp_path / "listings.csv"
    code = asyncio.run(run_scraper.main([GOOD, "--refresh", "--output", str(out)], service=FakeService()))
    assert code == 0
    with open(out, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert rows[0]["sourceSite"] == "Centris"
    assert rows[0]["bedroomCount"] == "3"


def test_cli_exit_code_reflects_failures(capsys) -> None:
    service = FakeService()
    code = asyncio.run(run_scraper.main([GOOD, BAD, "https://example.com/x"], service=service))
    assert code == 1
    assert len(service.calls) == 3
    out = capsys.readouterr().out
    assert "Collected 1 listing(s), 2 failed." in out
