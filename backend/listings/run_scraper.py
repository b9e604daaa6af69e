import argparse
import asyncio
import csv
import json
import sys
from typing import List, Optional

from backend.listings.config import ScraperConfig, configure_logging
from backend.listings.errors import ListingError
from backend.listings.service import ListingLookup, ListingService

CSV_FIELDS = [
    "sourceUrl",
    "sourceSite",
    "address",
    "price",
    "bedroomCount",
    "bathroomCount",
    "floorLevels",
    "livingArea",
    "condoFee",
    "contact",
]


def parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(prog="listing-scraper", description="Scrape Centris / DuProprio listing pages")
    p.add_argument("urls", nargs="+", help="Listing URL(s)")
    p.add_argument("--hint", default="", help="Fallback address used when the page has no usable one")
    p.add_argument("--refresh", action="store_true", help="Ignore cached results")
    p.add_argument("--output", help="Optional path to save results as .json or .csv")
    p.add_argument("--print-details", action="store_true", help="Print every field of each listing")
    p.add_argument("--verbose", action="store_true", help="Enable verbose logging for the listings scraper")
    return p.parse_args(argv)


def format_line(lookup: ListingLookup) -> str:
    r = lookup.listing
    beds = f"{r.bedroom_count} bd" if r.bedroom_count is not None else "--"
    baths = f"{r.bathroom_count:g} ba" if r.bathroom_count is not None else "--"
    area = r.living_area or "--"
    return f"- {r.address} | {r.price} | {beds} / {baths} | {area} | fees {r.condo_fee} | {r.source_url}"


def save_results(out_path: str, lookups: List[ListingLookup]) -> bool:
    rows = [lk.listing.to_json() for lk in lookups]
    if out_path.lower().endswith(".json"):
        with open(out_path, "w", encoding="utf-8") as f:
            json.dump(rows, f, indent=2, ensure_ascii=False, default=str)
    elif out_path.lower().endswith(".csv"):
        with open(out_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
            writer.writeheader()
            for r in rows:
                writer.writerow({k: r.get(k) for k in CSV_FIELDS})
    else:
        print(f"[warn] Unknown output format for '{out_path}'. Use .json or .csv")
        return False
    print(f"Saved {len(rows)} listing(s) to {out_path}")
    return True


async def main(argv: Optional[List[str]] = None, service: Optional[ListingService] = None) -> int:
    args = parse_args(argv)
    config = ScraperConfig()
    configure_logging(debug=args.verbose or config.debug)

    # one-shot runs launch the browser only if a rendered tier needs it
    config.warm_browser = False
    service = service if service is not None else ListingService(config)

    collected: List[ListingLookup] = []
    failed = 0
    try:
        for url in args.urls:
            print(f"\n🔍 Scraping {url} ...")
            try:
                lookup = await service.get_listing(url, address_hint=args.hint, refresh=args.refresh)
            except ListingError as e:
                failed += 1
                print(f"❌ {url}: {e}")
                continue
            collected.append(lookup)
            print(f"✅ {lookup.listing.source_site.value}: {lookup.listing.price}{' (cached)' if lookup.cached else ''}")
            if args.print_details:
                print(format_line(lookup))
    finally:
        await service.close()

    if args.output and collected:
        save_results(args.output, collected)

    print(f"\nCollected {len(collected)} listing(s), {failed} failed.")
    return 1 if failed else 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
