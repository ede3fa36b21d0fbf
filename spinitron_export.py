#!/usr/bin/env python3
"""
High-level goals:
- Given a Spinitron playlist URL, find the show's archived HLS audio stream.
- Download it, loudness-normalize it (two-pass EBU R128) and package it.
- Produce either a tagged .m4a with cover art, or a YouTube-ready .mp4 plus a
  description with chapter markers built from the playlist.

Technical steps:
1) Fetch the playlist page and read station, air date, air time and show name.
2) Find the .m3u8 link in the page, or rebuild it from the ark2Player config.
3) (YouTube) Parse the tracklist into chapter offsets and write the description.
4) Download the stream with ffmpeg, capped to the show duration.
5) Measure loudness (pass 1), then apply the correction linearly (pass 2).
6) Use ./cover.jpg or render a title card, then mux the final file.

Every stage writes to a fixed path derived from the show name and air date and
is skipped when that file already exists, so an interrupted export picks up
where it stopped.
"""

import argparse
import json
import math
import os
import re
import shutil
import subprocess
import sys
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time as clock
from html import unescape
from pathlib import Path
from typing import Callable
from urllib.error import URLError
from urllib.parse import unquote, urlparse
from urllib.request import Request, urlopen

__version__ = "0.3.0"

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120 Safari/537.36"
)

TARGET_I = "-14"
TARGET_TP = "-1.5"
TARGET_LRA = "11"
AUDIO_BITRATE = "192k"
AUDIO_SAMPLE_RATE = "48000"
VIDEO_FPS = "1"
VIDEO_CRF = "30"
VIDEO_PRESET = "ultrafast"
VIDEO_KEYINT = "300"

CARD_COLOR = "0x1a1a2e"
CARD_SIZES = {
    "video": "1920x1080",
    "audio": "1400x1400",
}

DEFAULT_DURATION = "02:00:00"
DEBUG_DURATION = "00:05:00"
UNKNOWN_STATION = "Unknown-Station"
UNKNOWN_SHOW = "Unknown-Show"
COVER_FILENAME = "cover.jpg"
# seconds a download may fall short of the requested duration before we warn
SHORT_STREAM_TOLERANCE = 60

MODES = ("audio", "video")

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
MONTH_ABBR = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

MONTH_PATTERN = (
    r"(Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?"
    r"|Aug(?:ust)?|Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)"
)
DATE_RE = re.compile(rf"\b{MONTH_PATTERN}\.?\s+(\d{{1,2}}),?\s+(\d{{4}})\b")

# 24h times are only taken when they stand alone, so ISO stamps such as
# 2026-10-14T16:00:00-05:00 in meta tags or JSON-LD never read as a range
AMPM_CLOCK = r"(?<![\d:])\d{1,2}(?::\d{2})?\s*[AaPp][Mm]\b"
H24_CLOCK = r"(?<![\d:T.])(?:[01]?\d|2[0-3]):[0-5]\d(?![\d:])"
AMPM_RANGE_RE = re.compile(rf"({AMPM_CLOCK})\s*[–—\-]+\s*({AMPM_CLOCK})")
H24_RANGE_RE = re.compile(rf"({H24_CLOCK})\s*[–—\-]+\s*({H24_CLOCK})")
TIME_RANGE_PATTERNS = (AMPM_RANGE_RE, H24_RANGE_RE)
CLOCK_FORMATS = ("%I:%M %p", "%I:%M%p", "%I %p", "%I%p", "%H:%M")

SHOW_TITLE_RE = re.compile(
    r"<h[1-6][^>]*class=[\"'][^\"']*show-title[^\"']*[\"'][^>]*>\s*<a[^>]*>(.*?)</a>",
    re.S | re.I,
)

DIRECT_M3U8_RE = re.compile(r"https://ark\d+\.spinitron\.com/[^\"'\s<>]+\.m3u8")
ARK_START_RE = re.compile(r"data-ark-start=[\"']([^\"']+)[\"']")
ARK_PLAYER_RE = re.compile(r"ark2Player\s*\(\s*[^,{)]+,\s*(?=\{)")

ROW_RE = re.compile(r"<tr\b[^>]*>(.*?)</tr>", re.S | re.I)
CELL_RE = re.compile(r"<td\b[^>]*>(.*?)</td>", re.S | re.I)
CELL_TIME_RE = re.compile(r"\d{1,2}:\d{2}(\s*[AP]M)?$", re.I)
SPIN_BLOCK_RE = re.compile(
    r"<(div|li|article)\b[^>]*class=[\"'][^\"']*(?:spin|track)[^\"']*[\"'][^>]*>(.*?)</\1>",
    re.S | re.I,
)
AMPM_TIME_RE = re.compile(r"\d{1,2}:\d{2}\s*[AP]M", re.I)
BARE_TIME_RE = re.compile(r"\d{1,2}:\d{2}")
ARTIST_RE = re.compile(r"<(\w+)[^>]*class=[\"'][^\"']*artist[^\"']*[\"'][^>]*>(.*?)</\1>", re.S | re.I)
SONG_RE = re.compile(r"<(\w+)[^>]*class=[\"'][^\"']*(?:song|title)[^\"']*[\"'][^>]*>(.*?)</\1>", re.S | re.I)
INLINE_RE = re.compile(r"<(a|span|b|strong|em)\b[^>]*>(.*?)</\1>", re.S | re.I)

LOUDNORM_JSON_RE = re.compile(r"(\{\s*\"input_i\"\s*:.*?\})", re.S)
FFMPEG_TIME_RE = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


class ExportError(Exception):
    """Raised when an export cannot continue."""


class StreamNotFoundError(ExportError):
    pass


class FFmpegError(ExportError):
    """ffmpeg exited non-zero or printed something we could not parse."""

    def __init__(self, message: str, returncode: int | None = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


@dataclass(frozen=True)
class ShowIdentity:
    station_name: str
    show_slug: str
    show_title_display: str


@dataclass(frozen=True)
class ShowSchedule:
    air_date_iso: str
    air_date_display: str
    duration_hhmmss: str

    @property
    def duration_seconds(self) -> int:
        return parse_duration(self.duration_hhmmss)


@dataclass
class TrackEntry:
    clock_time: str
    artist: str
    song: str = ""
    chapter_offset: int | None = None

    @property
    def chapter(self) -> str:
        if self.chapter_offset is None:
            return ""
        return format_chapter(self.chapter_offset)


@dataclass(frozen=True)
class StreamTarget:
    manifest_url: str
    strategy: str


@dataclass(frozen=True)
class ExportPaths:
    output_dir: Path
    base: str
    mode: str
    duration_tag: str

    @classmethod
    def for_show(cls, output_dir: Path, identity: ShowIdentity, schedule: ShowSchedule, mode: str) -> "ExportPaths":
        return cls(
            output_dir=Path(output_dir).absolute(),
            base=f"{identity.show_slug}-{schedule.air_date_iso}",
            mode=mode,
            duration_tag=schedule.duration_hhmmss.replace(":", ""),
        )

    @property
    def work_dir(self) -> Path:
        return self.output_dir / f".{self.base}.work"

    @property
    def raw_audio(self) -> Path:
        return self.work_dir / f"raw-{self.duration_tag}.m4a"

    @property
    def loudness_report(self) -> Path:
        return self.work_dir / f"loudnorm-{self.duration_tag}.json"

    @property
    def norm_audio(self) -> Path:
        return self.work_dir / f"norm-{self.duration_tag}.m4a"

    @property
    def cover(self) -> Path:
        return self.work_dir / f"cover-{self.mode}.jpg"

    @property
    def staged_cover(self) -> Path:
        return self.output_dir / COVER_FILENAME

    @property
    def final_audio(self) -> Path:
        return self.output_dir / f"{self.base}.m4a"

    @property
    def final_video(self) -> Path:
        return self.output_dir / f"{self.base}_youtube.mp4"

    @property
    def description(self) -> Path:
        return self.output_dir / f"{self.base}_description.txt"

    @property
    def final(self) -> Path:
        return self.final_video if self.mode == "video" else self.final_audio


@dataclass
class ExportOptions:
    url: str
    mode: str = "audio"
    debug: bool = False
    show_name: str | None = None
    duration: str | None = None
    output_dir: Path = field(default_factory=Path.cwd)
    keep_work: bool = False
    live: bool = False


@dataclass
class CommandResult:
    returncode: int
    output: str
    echoed: bool = False


@dataclass(frozen=True)
class Stage:
    name: str
    output: Path
    producer: Callable[[], None]


def parse_clock_time(value: str | None) -> clock | None:
    """Parse '4:00 PM', '4:00PM', '4 PM' or '16:00'; None when unparsable."""
    if not value:
        return None
    text = " ".join(value.split())
    for fmt in CLOCK_FORMATS:
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    return None


def clock_delta(start: clock, end: clock) -> int:
    """Seconds from start to end; an end before start is taken as the next day."""
    start_s = start.hour * 3600 + start.minute * 60 + start.second
    end_s = end.hour * 3600 + end.minute * 60 + end.second
    delta = end_s - start_s
    if delta < 0:
        delta += 24 * 3600
    return delta


def format_duration(seconds: int) -> str:
    h, rem = divmod(int(seconds), 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


def format_chapter(seconds: int) -> str:
    h, rem = divmod(int(seconds), 3600)
    m, s = divmod(rem, 60)
    return f"{h}:{m:02d}:{s:02d}" if h else f"{m}:{s:02d}"


def parse_duration(value: str) -> int:
    if value is None:
        raise ValueError("Duration is required")
    value = value.strip()
    if not value:
        raise ValueError("Duration is required")
    parts = value.split(":")
    if len(parts) > 3:
        raise ValueError("Duration must be in seconds, MM:SS, or HH:MM:SS")
    if not all(p.isdigit() for p in parts):
        raise ValueError("Duration must be numeric")
    nums = [int(p) for p in parts]
    if any(n >= 60 for n in nums[1:]):
        raise ValueError("Minutes and seconds must be below 60")
    while len(nums) < 3:
        nums.insert(0, 0)
    hours, minutes, seconds = nums
    total = hours * 3600 + minutes * 60 + seconds
    if total <= 0:
        raise ValueError("Duration must be greater than zero")
    return total


def fetch_text(url: str) -> str:
    req = Request(url, headers={"User-Agent": USER_AGENT})
    with urlopen(req, timeout=30) as resp:
        charset = resp.headers.get_content_charset() or "utf-8"
        return resp.read().decode(charset, "ignore")


def clean_text(fragment: str) -> str:
    text = re.sub(r"<[^>]+>", "", fragment or "")
    return " ".join(unescape(text).split())


def first_match(matchers, *args):
    for matcher in matchers:
        result = matcher(*args)
        if result:
            return result
    return None


def match_show_date(text: str) -> date | None:
    for m in DATE_RE.finditer(text):
        month = MONTHS[m.group(1)[:3].lower()]
        try:
            return date(int(m.group(3)), month, int(m.group(2)))
        except ValueError:
            continue
    return None


def match_show_duration(text: str) -> int | None:
    for pattern in TIME_RANGE_PATTERNS:
        for m in pattern.finditer(text):
            start = parse_clock_time(m.group(1))
            end = parse_clock_time(m.group(2))
            if start and end:
                # "4:00 PM – 4:00 PM" is a full day, not an empty show
                return clock_delta(start, end) or 24 * 3600
    return None


def format_display_date(day: date) -> str:
    return f"{MONTH_ABBR[day.month - 1]} {day.day}, {day.year}"


def extract_show_schedule(
    html: str,
    duration_override: str | None = None,
    debug: bool = False,
    today: date | None = None,
) -> ShowSchedule:
    # &nbsp; and &ndash; would otherwise break the textual patterns
    text = unescape(html)

    air_date = match_show_date(text)
    if air_date is None:
        air_date = today or date.today()
        print(f"Note: no show date found on the page, using {air_date.isoformat()}")

    if debug:
        duration = DEBUG_DURATION
    elif duration_override:
        duration = format_duration(parse_duration(duration_override))
    else:
        seconds = match_show_duration(text)
        if seconds is None:
            duration = DEFAULT_DURATION
            print(f"Note: no air time found on the page, using {DEFAULT_DURATION}")
        else:
            duration = format_duration(seconds)

    return ShowSchedule(
        air_date_iso=air_date.isoformat(),
        air_date_display=format_display_date(air_date),
        duration_hhmmss=duration,
    )


def station_from_url(url: str) -> str:
    path = urlparse(url).path.strip("/")
    return path.split("/")[0] if path else UNKNOWN_STATION


def title_from_markup(html: str, url: str) -> str | None:
    m = SHOW_TITLE_RE.search(html)
    if not m:
        return None
    return clean_text(m.group(1)) or None


def title_from_url(html: str, url: str) -> str | None:
    path = urlparse(url).path.rstrip("/")
    if not path:
        return None
    return unquote(path.rsplit("/", 1)[-1]).strip() or None


SHOW_NAME_MATCHERS = (title_from_markup, title_from_url)


def slugify(name: str) -> str:
    name = re.sub(r"[\\/:*?\"<>|]+", "", name)
    return re.sub(r"\s+", "-", name.strip())


def extract_show_identity(html: str, url: str, show_name: str | None = None) -> ShowIdentity:
    name = show_name or first_match(SHOW_NAME_MATCHERS, html, url) or UNKNOWN_SHOW
    slug = slugify(name) or UNKNOWN_SHOW
    return ShowIdentity(
        station_name=station_from_url(url),
        show_slug=slug,
        show_title_display=slug.replace("-", " "),
    )


def locate_direct_manifest(html: str) -> str | None:
    m = DIRECT_M3U8_RE.search(html)
    return unescape(m.group(0)) if m else None


def locate_ark_manifest(html: str) -> str | None:
    """Rebuild {hlsBaseUrl}/{stationName}-{arkStart}/index.m3u8 the way the page's player does."""
    start = ARK_START_RE.search(html)
    player = ARK_PLAYER_RE.search(html)
    if not start or not player:
        return None
    try:
        config, _end = json.JSONDecoder().raw_decode(html, player.end())
    except json.JSONDecodeError:
        return None
    if not isinstance(config, dict):
        return None
    base = str(config.get("hlsBaseUrl") or "").rstrip("/")
    station = str(config.get("stationName") or "")
    if not base or not station:
        return None
    return f"{base}/{station}-{start.group(1)}/index.m3u8"


STREAM_LOCATORS = (
    ("direct", locate_direct_manifest),
    ("ark2Player", locate_ark_manifest),
)


def locate_stream(html: str) -> StreamTarget:
    for strategy, locator in STREAM_LOCATORS:
        url = locator(html)
        if url:
            return StreamTarget(manifest_url=url, strategy=strategy)
    raise StreamNotFoundError(
        "Could not find an m3u8 link on the page.\n"
        "If the page requires a logged-in session, open the page in a browser\n"
        "and confirm the audio player loads."
    )


def tracks_from_table(html: str) -> list[TrackEntry]:
    tracks: list[TrackEntry] = []
    for row in ROW_RE.findall(html):
        cells = [clean_text(c) for c in CELL_RE.findall(row)]
        if len(cells) < 3:
            continue
        time_idx = None
        for i, cell in enumerate(cells):
            if CELL_TIME_RE.match(cell):
                time_idx = i
                break
        if time_idx is None:
            continue
        rest = [c for c in cells[time_idx + 1:] if c]
        if not rest:
            continue
        tracks.append(
            TrackEntry(
                clock_time=cells[time_idx],
                artist=rest[0],
                song=rest[1] if len(rest) > 1 else "",
            )
        )
    return tracks


def tracks_from_blocks(html: str) -> list[TrackEntry]:
    tracks: list[TrackEntry] = []
    for _tag, block in SPIN_BLOCK_RE.findall(html):
        text = clean_text(block)
        tm = AMPM_TIME_RE.search(text) or BARE_TIME_RE.search(text)
        if not tm:
            continue
        art = ARTIST_RE.search(block)
        if art:
            artist = clean_text(art.group(2))
            sng = SONG_RE.search(block)
            song = clean_text(sng.group(2)) if sng else ""
        else:
            texts = [clean_text(inner) for _tag, inner in INLINE_RE.findall(block)]
            texts = [t for t in texts if t and not BARE_TIME_RE.match(t)]
            artist = texts[0] if texts else ""
            song = texts[1] if len(texts) > 1 else ""
        if artist:
            tracks.append(TrackEntry(clock_time=tm.group(0), artist=artist, song=song))
    return tracks


TRACKLIST_MATCHERS = (tracks_from_table, tracks_from_blocks)


def extract_tracklist(html: str) -> list[TrackEntry]:
    return first_match(TRACKLIST_MATCHERS, html) or []


def assign_chapters(tracks: list[TrackEntry], duration_seconds: int) -> list[TrackEntry]:
    """Offset each track from the first one and keep those that start inside the export."""
    base = None
    last = 0
    retained: list[TrackEntry] = []
    for track in tracks:
        played_at = parse_clock_time(track.clock_time)
        if played_at is None:
            continue
        if base is None:
            base = played_at
        offset = clock_delta(base, played_at)
        if offset >= duration_seconds or offset < last:
            continue
        retained.append(replace(track, chapter_offset=offset))
        last = offset
    return retained


def render_description(identity: ShowIdentity, schedule: ShowSchedule, tracks: list[TrackEntry]) -> str:
    station = identity.station_name
    lines = [
        f"{identity.show_title_display} – {schedule.air_date_display}",
        f"{station} on Spinitron",
        "",
    ]
    if tracks:
        for track in tracks:
            line = f"{track.chapter} {track.artist}"
            if track.song:
                line += f" – {track.song}"
            lines.append(line.rstrip())
        lines.append("")
    lines.append(f"Originally aired on {station}.")
    return "\n".join(lines) + "\n"


def write_description(html: str, identity: ShowIdentity, schedule: ShowSchedule, path: Path) -> list[TrackEntry]:
    print("Parsing tracklist...")
    tracks = assign_chapters(extract_tracklist(html), schedule.duration_seconds)
    path.write_text(render_description(identity, schedule, tracks), encoding="utf-8")
    if tracks:
        print(f"Found {len(tracks)} tracks -> {path}")
    else:
        print(f"No tracklist found -- description written without tracklist -> {path}")
    return tracks


class Spinner:
    def __init__(self, label: str, enabled: bool = True):
        self.label = label
        self.enabled = enabled
        self._status = None

    def __enter__(self):
        if not self.enabled:
            return self
        from rich.status import Status

        self._status = Status(self.label, spinner="dots")
        self._status.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._status is not None:
            self._status.stop()
        return False


class FFmpegRunner:
    """Runs ffmpeg and hands back its exit code with the combined stdout/stderr.

    On a terminal (``live=True``) a rich progress bar tracks ``time=`` against the
    expected length; otherwise each output line is echoed so whoever reads our
    stdout sees ffmpeg's own progress.
    """

    def __init__(self, binary: str = "ffmpeg", live: bool = False):
        self.binary = binary
        self.live = live

    def run(
        self,
        args: list[str],
        label: str | None = None,
        expected_seconds: int | None = None,
        echo: bool = True,
        cwd: Path | None = None,
    ) -> CommandResult:
        cmd = [self.binary, "-hide_banner", "-nostdin", "-y", *args]
        if self.live and label and expected_seconds:
            return self._run_live(cmd, label, expected_seconds, cwd)
        lines: list[str] = []
        with subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            cwd=cwd,
        ) as proc:
            for line in proc.stdout:
                lines.append(line)
                if echo:
                    print(line, end="")
        return CommandResult(proc.returncode, "".join(lines), echoed=echo)

    def _run_live(self, cmd: list[str], label: str, expected_seconds: int, cwd: Path | None) -> CommandResult:
        from rich.progress import BarColumn, Progress, TextColumn, TimeRemainingColumn

        progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>6.2f}%"),
            TimeRemainingColumn(),
        )
        task_id = progress.add_task(label, total=float(expected_seconds))
        lines: list[str] = []
        with progress, subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            cwd=cwd,
        ) as proc:
            for line in proc.stdout:
                lines.append(line)
                match = FFMPEG_TIME_RE.search(line)
                if match:
                    h, m, s = match.groups()
                    done = int(h) * 3600 + int(m) * 60 + float(s)
                    progress.update(task_id, completed=min(done, expected_seconds))
        return CommandResult(proc.returncode, "".join(lines))


def ensure_ffmpeg() -> bool:
    return bool(shutil.which("ffmpeg"))


def part_path(path: Path) -> Path:
    # keep the real suffix last so ffmpeg still picks the right muxer
    return path.with_name(f"{path.stem}.part{path.suffix}")


def produce(runner: FFmpegRunner, args: list[str], output: Path, failure: str, **run_kwargs) -> None:
    """Run ffmpeg into a .part file and move it into place only on success."""
    tmp = part_path(output)
    result = runner.run([*args, str(tmp)], **run_kwargs)
    if result.returncode != 0:
        tmp.unlink(missing_ok=True)
        raise FFmpegError(
            f"{failure} (ffmpeg exit code {result.returncode})",
            returncode=result.returncode,
            output="" if result.echoed else result.output,
        )
    os.replace(tmp, output)


def probe_duration(path: Path) -> float | None:
    from mutagen import File as MutagenFile, MutagenError

    try:
        media = MutagenFile(str(path))
    except MutagenError:
        return None
    if media is None or media.info is None:
        return None
    return float(media.info.length)


def download_stream(runner: FFmpegRunner, target: StreamTarget, schedule: ShowSchedule, output: Path) -> None:
    print(f"Downloading audio to: {output}")
    produce(
        runner,
        ["-i", target.manifest_url, "-t", schedule.duration_hhmmss, "-c", "copy"],
        output,
        "Download failed",
        label="Downloading",
        expected_seconds=schedule.duration_seconds,
    )
    check_download_length(output, schedule.duration_seconds)


def check_download_length(path: Path, expected_seconds: int) -> None:
    length = probe_duration(path)
    if length is None:
        print(f"Note: could not read the length of {path.name}")
        return
    print(f"Downloaded:    {format_duration(round(length))}")
    if expected_seconds - length > SHORT_STREAM_TOLERANCE:
        print(
            f"Warning: the stream is shorter than the requested {format_duration(expected_seconds)}; "
            "the archive may not cover the whole show."
        )


@dataclass(frozen=True)
class LoudnessTargets:
    integrated: str = TARGET_I
    true_peak: str = TARGET_TP
    lra: str = TARGET_LRA

    def filter(self, *options: str) -> str:
        parts = [f"I={self.integrated}", f"TP={self.true_peak}", f"LRA={self.lra}", *options]
        return "loudnorm=" + ":".join(parts)


@dataclass(frozen=True)
class LoudnessMeasurement:
    input_i: str
    input_tp: str
    input_lra: str
    input_thresh: str
    target_offset: str

    @classmethod
    def from_mapping(cls, data: dict) -> "LoudnessMeasurement":
        values = {}
        for key in ("input_i", "input_tp", "input_lra", "input_thresh", "target_offset"):
            if key not in data:
                raise ValueError(f"loudnorm report is missing '{key}'")
            raw = str(data[key]).strip()
            try:
                number = float(raw)
            except ValueError as exc:
                raise ValueError(f"loudnorm report has a non-numeric '{key}': {raw}") from exc
            if not math.isfinite(number):
                raise ValueError(f"loudnorm report has '{key}' = {raw}; is the audio silent?")
            values[key] = raw
        return cls(**values)

    @classmethod
    def from_report(cls, output: str) -> "LoudnessMeasurement":
        m = LOUDNORM_JSON_RE.search(output)
        if not m:
            raise ValueError("Could not parse loudnorm JSON from ffmpeg output.")
        try:
            data = json.loads(m.group(1))
        except json.JSONDecodeError as exc:
            raise ValueError(f"Could not parse loudnorm JSON from ffmpeg output: {exc}") from exc
        return cls.from_mapping(data)

    def apply_options(self) -> list[str]:
        # linear=true keeps pass 2 from falling back to dynamic mode
        return [
            f"measured_I={self.input_i}",
            f"measured_TP={self.input_tp}",
            f"measured_LRA={self.input_lra}",
            f"measured_thresh={self.input_thresh}",
            f"offset={self.target_offset}",
            "linear=true",
        ]


def measure_loudness(
    runner: FFmpegRunner,
    raw_audio: Path,
    report: Path,
    targets: LoudnessTargets,
    expected_seconds: int | None = None,
) -> LoudnessMeasurement:
    if report.exists():
        try:
            saved = LoudnessMeasurement.from_mapping(json.loads(report.read_text(encoding="utf-8")))
        except ValueError as exc:
            print(f"Warning: ignoring unreadable loudness report {report}: {exc}")
        else:
            print(f"Loudness report already exists, skipping pass 1: {report}")
            return saved

    print("Analyzing loudness (pass 1)...")
    result = runner.run(
        ["-i", str(raw_audio), "-af", targets.filter("print_format=json"), "-f", "null", "-"],
        label="Analyzing loudness",
        expected_seconds=expected_seconds,
        echo=False,
    )
    if result.returncode != 0:
        raise FFmpegError(
            f"Loudness analysis failed (ffmpeg exit code {result.returncode})",
            returncode=result.returncode,
            output=result.output,
        )
    try:
        measurement = LoudnessMeasurement.from_report(result.output)
    except ValueError as exc:
        raise FFmpegError(str(exc), returncode=result.returncode, output=result.output) from exc

    print("Measured:")
    print(f"  input_i={measurement.input_i} LUFS")
    print(f"  input_tp={measurement.input_tp} dBTP")
    print(f"  input_lra={measurement.input_lra} LU")
    print(f"  input_thresh={measurement.input_thresh} LUFS")
    print(f"  target_offset={measurement.target_offset} LU")

    tmp = part_path(report)
    tmp.write_text(json.dumps(asdict(measurement), indent=2), encoding="utf-8")
    os.replace(tmp, report)
    return measurement


def normalize_audio(
    runner: FFmpegRunner,
    paths: ExportPaths,
    schedule: ShowSchedule,
    targets: LoudnessTargets | None = None,
) -> None:
    targets = targets or LoudnessTargets()
    measurement = measure_loudness(
        runner,
        paths.raw_audio,
        paths.loudness_report,
        targets,
        expected_seconds=schedule.duration_seconds,
    )
    print("Normalizing audio (pass 2)...")
    produce(
        runner,
        [
            "-i", str(paths.raw_audio),
            "-vn",
            "-af", targets.filter(*measurement.apply_options()),
            "-c:a", "aac",
            "-b:a", AUDIO_BITRATE,
            "-ar", AUDIO_SAMPLE_RATE,
        ],
        paths.norm_audio,
        "Loudness normalization failed",
        label="Normalizing",
        expected_seconds=schedule.duration_seconds,
    )


def stage_user_cover(paths: ExportPaths) -> bool:
    staged = paths.staged_cover
    if not staged.exists():
        return False
    tmp = part_path(paths.cover)
    try:
        shutil.copyfile(staged, tmp)
        os.replace(tmp, paths.cover)
    except OSError as exc:
        print(f"Warning: could not use {staged}: {exc}; a title card will be generated instead.")
        tmp.unlink(missing_ok=True)
        return False
    print(f"Using cover image: {staged}")
    return True


def drawtext(textfile: str, size: int, color: str, shift: str) -> str:
    return (
        f"drawtext=textfile={textfile}:expansion=none:fontsize={size}:fontcolor={color}"
        f":x=(w-text_w)/2:y=(h-text_h)/2{shift}"
    )


def synthesize_title_card(runner: FFmpegRunner, paths: ExportPaths, identity: ShowIdentity, schedule: ShowSchedule) -> None:
    size = CARD_SIZES[paths.mode]
    shape = "widescreen" if paths.mode == "video" else "square"
    print(f"No {COVER_FILENAME} found -- generating {shape} {size.replace('x', '×')} title card...")
    # text goes through files so show names never need filtergraph escaping
    (paths.work_dir / "card-title.txt").write_text(identity.show_title_display, encoding="utf-8")
    (paths.work_dir / "card-date.txt").write_text(schedule.air_date_display, encoding="utf-8")
    produce(
        runner,
        [
            "-f", "lavfi",
            "-i", f"color=c={CARD_COLOR}:s={size}:d=1",
            "-vf", ",".join([
                drawtext("card-title.txt", 72, "white", "-50"),
                drawtext("card-date.txt", 48, "0xaaaaaa", "+50"),
            ]),
            "-frames:v", "1",
        ],
        paths.cover,
        "Title card generation failed",
        cwd=paths.work_dir,
    )


def metadata_args(identity: ShowIdentity, schedule: ShowSchedule) -> list[str]:
    display = identity.show_title_display
    return [
        "-metadata", f"title={display} – {schedule.air_date_display}",
        "-metadata", f"artist={identity.station_name}",
        "-metadata", f"album={display}",
        "-metadata", f"date={schedule.air_date_iso}",
    ]


def mux_audio(runner: FFmpegRunner, paths: ExportPaths, identity: ShowIdentity, schedule: ShowSchedule) -> None:
    print("Embedding cover art and metadata...")
    produce(
        runner,
        [
            "-i", str(paths.norm_audio),
            "-i", str(paths.cover),
            "-map", "0:a",
            "-map", "1:v",
            "-c:a", "copy",
            "-c:v", "copy",
            "-disposition:v:0", "attached_pic",
            *metadata_args(identity, schedule),
        ],
        paths.final_audio,
        "Embedding cover art failed",
    )


def render_video(runner: FFmpegRunner, paths: ExportPaths, identity: ShowIdentity, schedule: ShowSchedule) -> None:
    print("Creating YouTube MP4...")
    produce(
        runner,
        [
            "-loop", "1",
            "-framerate", VIDEO_FPS,
            "-i", str(paths.cover),
            "-i", str(paths.norm_audio),
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-vf", "scale=trunc(iw/2)*2:trunc(ih/2)*2",
            "-c:v", "libx264",
            "-preset", VIDEO_PRESET,
            "-tune", "stillimage",
            "-crf", VIDEO_CRF,
            "-g", VIDEO_KEYINT,
            "-keyint_min", VIDEO_KEYINT,
            "-pix_fmt", "yuv420p",
            "-c:a", "copy",
            *metadata_args(identity, schedule),
            "-shortest",
        ],
        paths.final_video,
        "Video encoding failed",
        label="Encoding video",
        expected_seconds=schedule.duration_seconds,
    )


def run_stages(stages: list[Stage]) -> None:
    for stage in stages:
        if stage.output.exists():
            print(f"{stage.name} already exists, skipping: {stage.output}")
            continue
        stage.producer()


def remove_work_dir(paths: ExportPaths) -> None:
    if not paths.work_dir.exists():
        return
    try:
        shutil.rmtree(paths.work_dir)
    except OSError as exc:
        print(f"Warning: could not remove {paths.work_dir}: {exc}")


def export_show(
    options: ExportOptions,
    runner: FFmpegRunner | None = None,
    fetch: Callable[[str], str] | None = None,
) -> ExportPaths:
    if options.mode not in MODES:
        raise ExportError(f"Unknown output mode '{options.mode}'")
    runner = runner or FFmpegRunner(live=options.live)
    fetch = fetch or fetch_text

    print(f"Station: {station_from_url(options.url)}")
    print("Fetching page...")
    with Spinner("Fetching page", enabled=options.live):
        html = fetch(options.url)

    schedule = extract_show_schedule(html, duration_override=options.duration, debug=options.debug)
    print(f"Show date:     {schedule.air_date_display}")
    print(f"Show duration: {schedule.duration_hhmmss}")
    if options.debug:
        print("DEBUG MODE:    downloading only 5 minutes")

    identity = extract_show_identity(html, options.url, show_name=options.show_name)
    print(f"Show name: {identity.show_title_display}")

    paths = ExportPaths.for_show(Path(options.output_dir), identity, schedule, options.mode)

    print("Finding m3u8 in page...")
    target = locate_stream(html)
    print(f"m3u8: {target.manifest_url}")

    if options.mode == "video":
        write_description(html, identity, schedule, paths.description)
    else:
        print("Audio-only mode -- skipping tracklist/description")

    if paths.final.exists():
        print(f"Output already exists, skipping: {paths.final}")
    else:
        paths.work_dir.mkdir(parents=True, exist_ok=True)
        # a freshly staged cover.jpg always replaces whatever cover the work dir holds
        stage_user_cover(paths)
        finish = render_video if options.mode == "video" else mux_audio
        run_stages([
            Stage("Raw audio", paths.raw_audio, lambda: download_stream(runner, target, schedule, paths.raw_audio)),
            Stage("Normalized audio", paths.norm_audio, lambda: normalize_audio(runner, paths, schedule)),
            Stage("Cover image", paths.cover, lambda: synthesize_title_card(runner, paths, identity, schedule)),
            Stage("Final output", paths.final, lambda: finish(runner, paths, identity, schedule)),
        ])

    if not options.keep_work:
        remove_work_dir(paths)

    print("")
    print("Done:")
    if options.mode == "video":
        print(f"  Video:       {paths.final_video}")
        print(f"  Description: {paths.description}")
    else:
        print(f"  {paths.final_audio}")
    return paths


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="spinitron-export",
        description=(
            "Download a Spinitron show and produce a normalized audio file with embedded "
            "cover art and metadata. Use --youtube for an MP4 video."
        ),
        epilog=(
            "Examples:\n"
            "  spinitron-export https://spinitron.com/WXYZ/pl/12345678/My-Show\n"
            "  spinitron-export --youtube https://spinitron.com/WXYZ/pl/12345678/My-Show\n"
            "  spinitron-export --debug https://spinitron.com/WXYZ/pl/12345678/My-Show\n"
            "  SHOW_NAME=My-Show DURATION=01:00:00 spinitron-export https://spinitron.com/...\n\n"
            "Put a cover.jpg in the output directory to use it instead of a generated title card.\n"
            "Requires: ffmpeg in PATH and internet access."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("url", help="Spinitron playlist URL (e.g., https://spinitron.com/WXYZ/pl/12345678/My-Show)")
    parser.add_argument("--youtube", action="store_true", help="Produce a YouTube-ready MP4 instead of audio-only")
    parser.add_argument("--debug", action="store_true", help="Download only 5 minutes for quick testing")
    parser.add_argument("--output-dir", default=".", help="Directory for the output files (default: current directory)")
    parser.add_argument("--show-name", help="Override auto-detected show name for filenames (env: SHOW_NAME)")
    parser.add_argument("--duration", help="Override auto-detected recording duration, HH:MM:SS (env: DURATION)")
    parser.add_argument("--keep-work", action="store_true", help="Keep intermediate files after a successful export")
    parser.add_argument("--plain", action="store_true", help="Plain line output even on a terminal")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def run(args) -> int:
    if not ensure_ffmpeg():
        print("Error: ffmpeg not found in PATH.", file=sys.stderr)
        print("  Install it with your package manager, e.g. `brew install ffmpeg` or `apt install ffmpeg`.", file=sys.stderr)
        return 2

    show_name = args.show_name or os.environ.get("SHOW_NAME") or None
    duration = args.duration or os.environ.get("DURATION") or None
    if duration:
        try:
            parse_duration(duration)
        except ValueError as exc:
            print(f"Error: invalid duration '{duration}': {exc}", file=sys.stderr)
            return 2

    output_dir = Path(args.output_dir).expanduser().resolve()
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"Error: cannot use output directory {output_dir}: {exc}", file=sys.stderr)
        return 2

    options = ExportOptions(
        url=args.url,
        mode="video" if args.youtube else "audio",
        debug=args.debug,
        show_name=show_name,
        duration=duration,
        output_dir=output_dir,
        keep_work=args.keep_work,
        live=sys.stdout.isatty() and not args.plain,
    )

    try:
        export_show(options)
    except URLError as exc:
        print(f"Error: failed to read URL: {exc}", file=sys.stderr)
        return 1
    except FFmpegError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if exc.output:
            print("--- ffmpeg log ---", file=sys.stderr)
            print(exc.output.rstrip(), file=sys.stderr)
            print("--- end log ---", file=sys.stderr)
        return 1
    except ExportError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


def main():
    parser = build_parser()
    args = parser.parse_args()
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
