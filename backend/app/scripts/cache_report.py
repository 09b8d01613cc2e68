from __future__ import annotations

import argparse
from collections.abc import Sequence

from backend.app.config import load_settings
from backend.app.repositories.database import Database
from backend.app.repositories.youtube_cache_repository import YouTubeCacheRepository


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Inspect and repair the cached YouTube channels and playlists.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    stats_parser = subparsers.add_parser("stats", help="Print per-user cache statistics.")
    stats_parser.add_argument("--user-id", help="Limit output to one user.")

    mark_parser = subparsers.add_parser(
        "mark-music",
        help="Set unknown channel/playlist classification flags to music.",
    )
    mark_parser.add_argument("--user-id", help="Limit the update to one user.")
    mark_parser.add_argument(
        "--dry",
        action="store_true",
        help="Only report how many rows would change.",
    )

    titles_parser = subparsers.add_parser(
        "fill-titles",
        help="Store the unset-title marker where a latest video has no title.",
    )
    titles_parser.add_argument("--user-id", help="Limit the update to one user.")
    titles_parser.add_argument(
        "--dry",
        action="store_true",
        help="Only report how many rows would change.",
    )

    return parser.parse_args(argv)


def _target_user_ids(repository: YouTubeCacheRepository, user_id: str | None) -> list[str]:
    if user_id is not None:
        return [user_id]
    return repository.list_user_ids()


def _print_stats(repository: YouTubeCacheRepository, user_ids: list[str]) -> None:
    print(
        "user_id\tchannels\tplaylists\tunclassified_channels\tunclassified_playlists\t"
        "missing_video_titles\tchannels_cached_at\tplaylists_cached_at"
    )
    for user_id in user_ids:
        stats = repository.stats(user_id)
        print(
            "\t".join(
                [
                    user_id,
                    str(stats.channels),
                    str(stats.playlists),
                    str(stats.unclassified_channels),
                    str(stats.unclassified_playlists),
                    str(stats.channels_missing_video_title),
                    stats.channels_cached_at.isoformat() if stats.channels_cached_at else "-",
                    stats.playlists_cached_at.isoformat() if stats.playlists_cached_at else "-",
                ]
            )
        )


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = load_settings(validate_oauth_secrets=False)
    database = Database(settings.db_path)
    database.initialize()
    repository = YouTubeCacheRepository(database)
    user_ids = _target_user_ids(repository, args.user_id)

    if not user_ids:
        print("No cached users found.")
        return

    if args.command == "stats":
        _print_stats(repository, user_ids)
        return

    if args.command == "mark-music":
        for user_id in user_ids:
            if args.dry:
                stats = repository.stats(user_id)
                channels, playlists = stats.unclassified_channels, stats.unclassified_playlists
                verb = "Would mark"
            else:
                channels, playlists = repository.mark_unclassified_as_music(user_id)
                verb = "Marked"
            print(f"{verb} {channels} channels and {playlists} playlists as music for {user_id}")
        return

    if args.command == "fill-titles":
        for user_id in user_ids:
            if args.dry:
                count = repository.stats(user_id).channels_missing_video_title
                verb = "Would fill"
            else:
                count = repository.fill_missing_video_titles(user_id)
                verb = "Filled"
            print(f"{verb} {count} missing video titles for {user_id}")
        return

    raise RuntimeError(f"Unhandled command: {args.command}")


if __name__ == "__main__":
    main()
