"""
Item image storage and uploads.
"""
import io

import pytest
from fastapi import HTTPException
from PIL import Image

from app.core import storage
from conftest import add_item, create_wishlist


def _png_bytes(size: tuple[int, int] = (4, 4)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color=(200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


class TestValidateImage:
    def test_png_is_accepted(self):
        assert storage.validate_image("image/png", _png_bytes()) == "png"

    def test_extension_follows_real_format(self):
        assert storage.validate_image("image/jpeg", _png_bytes()) == "png"

    def test_wrong_content_type(self):
        with pytest.raises(HTTPException) as exc_info:
            storage.validate_image("application/pdf", _png_bytes())
        assert exc_info.value.status_code == 400
        assert exc_info.value.detail == storage.INVALID_TYPE_MESSAGE

    def test_garbage_bytes(self):
        with pytest.raises(HTTPException) as exc_info:
            storage.validate_image("image/png", b"definitely not an image")
        assert exc_info.value.status_code == 400

    def test_too_large(self, monkeypatch):
        monkeypatch.setattr(storage, "max_upload_bytes", lambda: 10)
        with pytest.raises(HTTPException) as exc_info:
            storage.validate_image("image/png", _png_bytes())
        assert exc_info.value.status_code == 413


class TestPaths:
    def test_public_url_round_trip(self):
        url = storage.build_public_url("user-1/item-1/123.png")
        assert url.endswith("/media/item-images/user-1/item-1/123.png")
        assert storage.extract_storage_path(url) == "user-1/item-1/123.png"
        assert storage.extract_storage_path(url + "?v=2") == "user-1/item-1/123.png"

    def test_foreign_urls_are_ignored(self):
        assert storage.extract_storage_path("https://cdn.example.com/a.png") is None
        assert storage.extract_storage_path(None) is None

    def test_item_image_path(self):
        path = storage.item_image_path("user-1", "item-1", "webp")
        assert path.startswith("user-1/item-1/")
        assert path.endswith(".webp")

    def test_path_cannot_escape_bucket(self):
        with pytest.raises(ValueError):
            storage.save_file("../../escape.png", b"x")

    def test_save_and_delete(self):
        target = storage.save_file("test-user/test-item/1.png", b"data")
        assert target.read_bytes() == b"data"
        assert storage.delete_file("test-user/test-item/1.png") is True
        assert storage.delete_file("test-user/test-item/1.png") is False


class TestUploadEndpoint:
    def _upload(self, member, wishlist_id, item_id, data=None, content_type="image/png"):
        return member.client.post(
            f"/wishlists/{wishlist_id}/items/{item_id}/image",
            files={"file": ("gift.png", data if data is not None else _png_bytes(), content_type)},
        )

    def test_upload_replace_and_remove(self, alice):
        wishlist = create_wishlist(alice)
        item = add_item(alice, wishlist["id"])

        res = self._upload(alice, wishlist["id"], item["id"])
        assert res.status_code == 200
        first_url = res.json()["image_url"]
        first_path = storage.get_bucket_root() / storage.extract_storage_path(first_url)
        assert first_path.exists()

        items = alice.client.get(f"/wishlists/{wishlist['id']}").json()["items"]
        assert items[0]["custom_image_url"] == first_url
        assert items[0]["image_url"] is None

        res = alice.client.delete(f"/wishlists/{wishlist['id']}/items/{item['id']}/image")
        assert res.json() == {"success": True}
        assert not first_path.exists()

        res = alice.client.delete(f"/wishlists/{wishlist['id']}/items/{item['id']}/image")
        assert res.status_code == 400
        assert res.json()["error"] == "No custom image to remove"

    def test_upload_rejects_non_images(self, alice):
        wishlist = create_wishlist(alice)
        item = add_item(alice, wishlist["id"])
        res = self._upload(alice, wishlist["id"], item["id"], data=b"%PDF-1.4", content_type="application/pdf")
        assert res.status_code == 400
        assert res.json()["error"] == storage.INVALID_TYPE_MESSAGE

    def test_friend_cannot_upload(self, alice, bob):
        wishlist = create_wishlist(alice)
        item = add_item(alice, wishlist["id"])
        assert self._upload(bob, wishlist["id"], item["id"]).status_code == 403
