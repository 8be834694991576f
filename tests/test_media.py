import os

import pytest
from telethon.tl.custom import Message
from telethon.tl.types import (
    Document,
    DocumentAttributeFilename,
    DocumentAttributeVideo,
    MessageMediaDocument,
    MessageMediaPhoto,
    MessageMediaWebPage,
    PeerChannel,
    Photo,
    WebPage,
)

from archiver.media import (
    DownloadDecision,
    DownloadFilter,
    DownloadScheduler,
    FreshnessEvaluator,
    MediaClassifier,
    MediaDownloader,
)
from archiver.models import DownloadTask, MediaKind, RunStatistics
from archiver.retry import RetryController, RetryPolicy

from tests.conftest import OLD_DATE, FakeGateway, make_message


@pytest.fixture
def classifier():
    return MediaClassifier()


class TestMediaClassifier:
    def test_photo_uses_message_id_and_jpg(self, classifier):
        descriptor = classifier.classify(make_message(7, media="photo"))

        assert descriptor.kind is MediaKind.IMAGE
        assert descriptor.subfolder == "image"
        assert descriptor.file_name == "7"
        assert descriptor.extension == ".jpg"

    def test_video_keeps_declared_mp4_name(self, classifier):
        message = make_message(8, media="video", file_name="Holiday Clip.MP4")
        descriptor = classifier.classify(message)

        assert descriptor.kind is MediaKind.VIDEO
        assert descriptor.file_name == "Holiday Clip"
        assert descriptor.extension == ".mp4"

    def test_mismatched_extension_replaced_by_default(self, classifier):
        message = make_message(9, media="video", file_name="clip.mkv")
        descriptor = classifier.classify(message)

        assert descriptor.file_name == "clip"
        assert descriptor.extension == ".mp4"

    def test_document_refined_by_mime_type(self, classifier):
        message = make_message(10, media="document", mime_type="image/png", file_name="scan.png")
        descriptor = classifier.classify(message)

        assert descriptor.kind is MediaKind.IMAGE
        assert descriptor.basename == "scan.png"

    def test_generic_document_gets_doc_extension(self, classifier):
        message = make_message(11, media="document", mime_type="application/pdf", file_name="report.pdf")
        descriptor = classifier.classify(message)

        assert descriptor.kind is MediaKind.DOCUMENT
        assert descriptor.basename == "report.doc"

    def test_sticker_mime_type(self, classifier):
        message = make_message(12, media="document", mime_type="application/x-tgsticker")
        descriptor = classifier.classify(message)

        assert descriptor.kind is MediaKind.STICKER
        assert descriptor.basename == "12"

    @pytest.mark.parametrize(
        "tag,kind,extension",
        [
            ("audio", MediaKind.AUDIO, ".mp3"),
            ("web_preview", MediaKind.WEBPAGE, ".html"),
            ("poll", MediaKind.POLL, ""),
            ("geo", MediaKind.GEO, ""),
            ("contact", MediaKind.CONTACT, ""),
        ],
    )
    def test_tag_kinds_and_default_extensions(self, classifier, tag, kind, extension):
        descriptor = classifier.classify(make_message(13, media=tag))

        assert descriptor.kind is kind
        assert descriptor.extension == extension

    def test_priority_photo_before_document(self, classifier):
        message = make_message(14, media="photo", mime_type="application/pdf")

        assert classifier.media_kind(message) is MediaKind.IMAGE

    def test_geo_wins_over_venue(self, classifier):
        message = make_message(15, media="venue", geo=object())

        assert classifier.media_kind(message) is MediaKind.GEO

    def test_no_media_is_other(self, classifier):
        assert classifier.media_kind(make_message(16)) is MediaKind.OTHER

    def test_declared_name_directory_is_stripped(self, classifier):
        message = make_message(17, media="audio", file_name="../../etc/song.mp3")
        descriptor = classifier.classify(message)

        assert descriptor.basename == "song.mp3"

    def test_classification_is_deterministic(self, classifier, tmp_path):
        message = make_message(18, media="document", mime_type="video/mp4", file_name="a.mp4")

        first = classifier.classify(message)
        second = classifier.classify(message)

        assert first == second
        assert classifier.resolve_path(first, tmp_path) == tmp_path / "video" / "a.mp4"

    def test_ensure_directory_is_idempotent(self, tmp_path):
        path = tmp_path / "image" / "1.jpg"
        MediaClassifier.ensure_directory(path)
        MediaClassifier.ensure_directory(path)

        assert path.parent.is_dir()


def _photo():
    return Photo(id=1, access_hash=2, file_reference=b"", date=OLD_DATE, sizes=[], dc_id=2)


def _document(mime_type, attributes):
    return Document(
        id=3,
        access_hash=4,
        file_reference=b"",
        date=OLD_DATE,
        mime_type=mime_type,
        size=1024,
        dc_id=2,
        attributes=attributes,
    )


def _telegram_message(message_id, media):
    return Message(id=message_id, peer_id=PeerChannel(channel_id=1), date=OLD_DATE, message="", media=media)


class TestClassifierWithTelethonMessages:
    def test_link_preview_with_photo_is_webpage(self, classifier):
        webpage = WebPage(
            id=5, url="https://example.com/post", display_url="example.com/post", hash=0, photo=_photo()
        )
        message = _telegram_message(7, MessageMediaWebPage(webpage=webpage))

        descriptor = classifier.classify(message)

        assert descriptor.kind is MediaKind.WEBPAGE
        assert descriptor.basename == "7.html"

    def test_link_preview_with_document_ignores_file_name(self, classifier):
        document = _document("video/mp4", [DocumentAttributeFilename(file_name="preview.mp4")])
        webpage = WebPage(
            id=6, url="https://example.com/clip", display_url="example.com/clip", hash=0, document=document
        )
        message = _telegram_message(8, MessageMediaWebPage(webpage=webpage))

        descriptor = classifier.classify(message)

        assert descriptor.kind is MediaKind.WEBPAGE
        assert descriptor.basename == "8.html"

    def test_photo_message(self, classifier):
        message = _telegram_message(9, MessageMediaPhoto(photo=_photo()))

        descriptor = classifier.classify(message)

        assert descriptor.kind is MediaKind.IMAGE
        assert descriptor.basename == "9.jpg"

    def test_video_document_keeps_declared_name(self, classifier):
        document = _document(
            "video/mp4",
            [DocumentAttributeVideo(duration=3, w=640, h=360), DocumentAttributeFilename(file_name="trip.mp4")],
        )
        message = _telegram_message(10, MessageMediaDocument(document=document))

        descriptor = classifier.classify(message)

        assert descriptor.kind is MediaKind.VIDEO
        assert descriptor.basename == "trip.mp4"

    def test_pdf_document(self, classifier):
        document = _document("application/pdf", [DocumentAttributeFilename(file_name="report.pdf")])
        message = _telegram_message(11, MessageMediaDocument(document=document))

        assert classifier.classify(message).basename == "report.doc"


class TestDownloadFilter:
    def test_parse_kinds_and_extensions(self):
        download_filter = DownloadFilter.parse("image, .PDF ,video")

        assert download_filter.allows(MediaKind.IMAGE, ".jpg")
        assert download_filter.allows(MediaKind.DOCUMENT, ".pdf")
        assert not download_filter.allows(MediaKind.AUDIO, ".mp3")

    def test_parse_all(self):
        assert DownloadFilter.parse("video,all").download_all


class TestFreshnessEvaluator:
    def _evaluate(self, evaluator, message, path, stats):
        descriptor = MediaClassifier().classify(message)
        return evaluator.evaluate(message, descriptor, path, stats)

    def test_missing_file_downloads(self, tmp_path):
        assert FreshnessEvaluator.decide(tmp_path / "none.jpg", 0) is DownloadDecision.DOWNLOAD

    def test_empty_file_redownloads(self, tmp_path):
        path = tmp_path / "empty.jpg"
        path.touch()

        assert FreshnessEvaluator.decide(path, 0) is DownloadDecision.REDOWNLOAD

    def test_older_file_redownloads(self, tmp_path):
        path = tmp_path / "old.jpg"
        path.write_bytes(b"x")
        os.utime(path, (1000, 1000))

        assert FreshnessEvaluator.decide(path, 2000) is DownloadDecision.REDOWNLOAD

    def test_up_to_date_file_is_skipped_every_time(self, tmp_path):
        evaluator = FreshnessEvaluator(DownloadFilter.everything())
        message = make_message(1, media="photo")
        path = tmp_path / "1.jpg"
        path.write_bytes(b"x")
        stats = RunStatistics()

        for expected in (1, 2, 3):
            assert self._evaluate(evaluator, message, path, stats) is False
            assert stats.skipped == expected

        assert stats.downloaded == 0
        assert stats.updated == 0
        assert stats.total_files == 3

    def test_stale_file_counts_as_updated(self, tmp_path):
        evaluator = FreshnessEvaluator(DownloadFilter.everything())
        message = make_message(1, media="photo")
        path = tmp_path / "1.jpg"
        path.write_bytes(b"x")
        os.utime(path, (1000, 1000))
        stats = RunStatistics()

        assert self._evaluate(evaluator, message, path, stats) is True
        assert (stats.downloaded, stats.updated, stats.skipped) == (0, 1, 0)

    def test_disallowed_kind_is_skipped(self, tmp_path):
        evaluator = FreshnessEvaluator(DownloadFilter.parse("video"))
        stats = RunStatistics()

        assert self._evaluate(evaluator, make_message(1, media="photo"), tmp_path / "1.jpg", stats) is False
        assert (stats.total_files, stats.skipped, stats.downloaded) == (1, 1, 0)

    def test_message_without_media_not_counted(self, tmp_path):
        evaluator = FreshnessEvaluator(DownloadFilter.everything())
        stats = RunStatistics()
        message = make_message(1)

        descriptor = MediaClassifier().classify(message)
        assert evaluator.evaluate(message, descriptor, tmp_path / "1", stats) is False
        assert stats == RunStatistics()


def _tasks(tmp_path, count):
    return [
        DownloadTask(message=make_message(i, media="photo"), target_path=tmp_path / "image" / f"{i}.jpg")
        for i in range(1, count + 1)
    ]


class TestDownloadScheduler:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [1, 5, 12, 23])
    async def test_never_exceeds_max_parallel(self, tmp_path, sleep, count):
        gateway = FakeGateway()
        scheduler = DownloadScheduler(
            MediaDownloader(gateway), RunStatistics(), max_parallel=5, cool_down=3, sleep=sleep
        )

        for task in _tasks(tmp_path, count):
            await scheduler.submit(task)
            assert scheduler.pending < 5
        await scheduler.drain()

        assert gateway.peak_in_flight <= 5
        assert sorted(gateway.downloads) == list(range(1, count + 1))
        assert sleep.delays == [3] * (count // 5)

    @pytest.mark.asyncio
    async def test_failed_download_does_not_abort_batch(self, tmp_path, sleep):
        gateway = FakeGateway()
        gateway.download_results = {2: False, 3: RuntimeError("file reference expired")}
        stats = RunStatistics()
        scheduler = DownloadScheduler(MediaDownloader(gateway), stats, max_parallel=3, sleep=sleep)

        for task in _tasks(tmp_path, 3):
            await scheduler.submit(task)
        await scheduler.drain()

        assert gateway.downloads == [1]
        assert stats.failed == 2

    @pytest.mark.asyncio
    async def test_transient_failures_retried_with_fixed_delay(self, tmp_path, sleep):
        gateway = FakeGateway()
        gateway.download_results = {2: [ConnectionError("reset"), True]}
        retry = RetryController(RetryPolicy(max_retries=3, fixed_delay=5), sleep=sleep)
        scheduler = DownloadScheduler(
            MediaDownloader(gateway), RunStatistics(), max_parallel=2, cool_down=1, retry=retry, sleep=sleep
        )

        for task in _tasks(tmp_path, 2):
            await scheduler.submit(task)

        assert sorted(gateway.downloads) == [1, 2]
        assert gateway.downloads.count(1) == 1
        assert sleep.delays == [5, 1]

    @pytest.mark.asyncio
    async def test_exhausted_batch_raises_transient_error(self, tmp_path, sleep):
        gateway = FakeGateway()
        gateway.download_results = {1: [TimeoutError()] * 10}
        retry = RetryController(RetryPolicy(max_retries=2, fixed_delay=1), sleep=sleep)
        scheduler = DownloadScheduler(MediaDownloader(gateway), RunStatistics(), retry=retry, sleep=sleep)

        await scheduler.submit(_tasks(tmp_path, 1)[0])
        with pytest.raises(TimeoutError):
            await scheduler.drain()

    def test_rejects_zero_width(self):
        with pytest.raises(ValueError):
            DownloadScheduler(MediaDownloader(FakeGateway()), RunStatistics(), max_parallel=0)


@pytest.mark.asyncio
async def test_downloader_reports_missing_file(tmp_path):
    class LyingGateway:
        async def download_media(self, message, destination):
            return True

    task = _tasks(tmp_path, 1)[0]

    assert await MediaDownloader(LyingGateway()).download(task) is False
    assert task.target_path.parent.is_dir()
