import tempfile
import unittest
from pathlib import Path

from duet.blobs import BlobLimits, LocalBlobStore
from duet.errors import UploadError


class LocalBlobStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.blobs = LocalBlobStore(
            str(Path(self.tmpdir.name) / "uploads"),
            "http://media.test/",
            BlobLimits(max_bytes={"image": 8, "video": 16, "avatar": 4}),
        )

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_store_writes_file_and_returns_url(self):
        url = self.blobs.store(b"pixels", "image", "Photo.JPG")

        self.assertTrue(url.startswith("http://media.test/uploads/"))
        self.assertTrue(url.endswith(".jpg"))
        name = url.rsplit("/", 1)[1]
        self.assertEqual((Path(self.tmpdir.name) / "uploads" / name).read_bytes(), b"pixels")

    def test_names_do_not_collide(self):
        first = self.blobs.store(b"a", "video", "clip.mp4")
        second = self.blobs.store(b"a", "video", "clip.mp4")

        self.assertNotEqual(first, second)

    def test_rejects_wrong_extension_for_kind(self):
        with self.assertRaises(UploadError):
            self.blobs.store(b"a", "image", "clip.mp4")
        with self.assertRaises(UploadError):
            self.blobs.store(b"a", "video", "photo.png")
        with self.assertRaises(UploadError):
            self.blobs.store(b"a", "image", "noextension")

    def test_rejects_oversized_and_empty_uploads(self):
        with self.assertRaises(UploadError):
            self.blobs.store(b"123456789", "image", "big.png")
        with self.assertRaises(UploadError):
            self.blobs.store(b"12345", "avatar", "me.png")
        with self.assertRaises(UploadError):
            self.blobs.store(b"", "image", "empty.png")

    def test_rejects_unknown_kind(self):
        with self.assertRaises(UploadError):
            self.blobs.store(b"a", "audio", "song.mp3")


if __name__ == "__main__":
    unittest.main()
