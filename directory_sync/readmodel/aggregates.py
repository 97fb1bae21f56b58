"""
Category Stats Aggregation

Groups the rows of one flattened build into per-category statistics.
Pure function of its input: the stats of a version depend only on the
flattened rows of that same version.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import polars as pl

FLATTENED_SCHEMA = {
    "category_id": pl.Utf8,
    "category_name": pl.Utf8,
    "category_slug": pl.Utf8,
    "listing_id": pl.Utf8,
    "is_primary": pl.Boolean,
    "city": pl.Utf8,
    "state": pl.Utf8,
    "rating_avg": pl.Float64,
    "rating_count": pl.Int64,
    "item_count": pl.Int64,
    "is_featured": pl.Boolean,
    "listing_created_at": pl.Datetime("us"),
    "listing_updated_at": pl.Datetime("us"),
}


def flattened_frame(rows: List[Dict[str, Any]]) -> pl.DataFrame:
    """Load flattened rows into a frame with a fixed schema (works for zero rows)."""
    return pl.DataFrame(
        [{column: row.get(column) for column in FLATTENED_SCHEMA} for row in rows],
        schema=FLATTENED_SCHEMA,
    )


def _round(value: Optional[float], digits: int = 2) -> Optional[float]:
    return round(value, digits) if value is not None else None


def aggregate_category_stats(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Per-category statistics for a set of flattened rows.

    Returns one dict per category that has at least one row, ordered by
    store_count descending then category name.
    """
    df = flattened_frame(rows)

    location = pl.when(pl.col("city").is_not_null()).then(
        pl.concat_str([pl.col("city"), pl.col("state").fill_null("")], separator="|")
    )

    stats = (
        df.group_by("category_id")
        .agg(
            pl.col("category_name").first(),
            pl.col("category_slug").first(),
            pl.col("listing_id").n_unique().alias("store_count"),
            pl.col("is_primary").sum().alias("primary_count"),
            pl.col("is_primary").not_().sum().alias("secondary_count"),
            pl.col("is_featured").fill_null(False).sum().alias("featured_count"),
            pl.col("item_count").fill_null(0).sum().alias("total_items"),
            pl.col("item_count").fill_null(0).mean().alias("avg_items_per_store"),
            pl.col("rating_avg").mean().alias("avg_rating"),
            pl.col("rating_count").fill_null(0).sum().alias("total_ratings"),
            location.drop_nulls().n_unique().alias("unique_locations"),
            pl.col("city").drop_nulls().unique().sort().alias("cities"),
            pl.col("state").drop_nulls().unique().sort().alias("states"),
            pl.col("listing_created_at").min().alias("first_store_added"),
            pl.col("listing_updated_at").max().alias("last_store_updated"),
        )
        .sort(["store_count", "category_name"], descending=[True, False])
    )

    results = []
    for record in stats.to_dicts():
        results.append({
            "category_id": record["category_id"],
            "category_name": record["category_name"],
            "category_slug": record["category_slug"],
            "store_count": int(record["store_count"]),
            "primary_count": int(record["primary_count"]),
            "secondary_count": int(record["secondary_count"]),
            "featured_count": int(record["featured_count"]),
            "total_items": int(record["total_items"]),
            "avg_items_per_store": _round(record["avg_items_per_store"]) or 0.0,
            "avg_rating": _round(record["avg_rating"]),
            "total_ratings": int(record["total_ratings"]),
            "unique_locations": int(record["unique_locations"]),
            "cities": list(record["cities"] or []),
            "states": list(record["states"] or []),
            "first_store_added": record["first_store_added"],
            "last_store_updated": record["last_store_updated"],
        })
    return results


def stamp_stats(
    stats: List[Dict[str, Any]],
    scope: str,
    version: int,
    generated_at: datetime,
) -> List[Dict[str, Any]]:
    """Tag aggregate rows with the build they belong to."""
    return [
        {**row, "scope": scope, "version": version, "generated_at": generated_at}
        for row in stats
    ]
