import os
import shutil
import tempfile
import unittest

from uploads import UploadRouter, build_filename


class TestBuildFilename(unittest.TestCase):
    def test_layout_keeps_extension(self):
        name = build_filename("video", "42", "clip.mp4", now_ms=1001, rand=7)
        self.assertEqual(name, "video-42-1001-7.mp4")

    def test_analysis_fallback_extension(self):
        self.assertEqual(build_filename("audio", "42", "blob", now_ms=1, rand=2), "audio-42-1-2.webm")
        self.assertEqual(build_filename("video", "42", None, now_ms=1, rand=2), "video-42-1-2.webm")

    def test_other_kinds_have_no_fallback(self):
        self.assertEqual(build_filename("image", "42", "avatar", now_ms=1, rand=2), "image-42-1-2")

    def test_owner_id_with_hyphen_rejected(self):
        with self.assertRaises(ValueError):
            build_filename("video", "a-b", "clip.webm")


class TestUploadRouter(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.public_dir = os.path.join(self.test_dir, "uploads")
        self.pending_dir = os.path.join(self.public_dir, "pending_analysis")
        self.router = UploadRouter(self.public_dir, self.pending_dir)
        self.router.ensure_dirs()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_recordings_go_to_holding_area(self):
        stored = self.router.save("video", "42", b"frames", "clip.webm")
        self.assertTrue(stored.pending)
        self.assertIsNone(stored.url)
        self.assertEqual(os.path.dirname(stored.path), self.pending_dir)
        with open(stored.path, "rb") as fh:
            self.assertEqual(fh.read(), b"frames")

    def test_assets_go_to_public_dir(self):
        stored = self.router.save("image", "42", b"png", "me.png")
        self.assertFalse(stored.pending)
        self.assertEqual(stored.url, f"/uploads/{stored.filename}")
        self.assertTrue(os.path.exists(os.path.join(self.public_dir, stored.filename)))
        self.assertTrue(stored.filename.startswith("image-42-"))


if __name__ == '__main__':
    unittest.main()
