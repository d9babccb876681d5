import pytest

from conftest import make_jpeg, make_png
from fezlacrypt.errors import NotAnImage
from fezlacrypt.formats import MIN_IMAGE_BYTES, ImageKind, classify


@pytest.mark.parametrize('data,kind', [
    (make_jpeg(), ImageKind.JPEG),
    (make_png(), ImageKind.PNG),
    (b'GIF87a' + b'\x00' * 200, ImageKind.GIF),
    (b'GIF89a' + b'\x00' * 200, ImageKind.GIF),
])
def test_classify(data, kind):
    assert classify(data) is kind


def test_kind_metadata():
    assert ImageKind.JPEG.mime == 'image/jpeg'
    assert ImageKind.JPEG.extension == 'jpg'
    assert ImageKind.PNG.mime == 'image/png'
    assert ImageKind.GIF.extension == 'gif'


def test_minimum_length():
    assert classify(make_png(MIN_IMAGE_BYTES)) is ImageKind.PNG
    with pytest.raises(NotAnImage):
        classify(make_png(MIN_IMAGE_BYTES - 1))
    with pytest.raises(NotAnImage):
        classify(b'')
    with pytest.raises(NotAnImage):
        classify(None)


def test_unknown_signature():
    with pytest.raises(NotAnImage):
        classify(b'%PDF-1.7' + b'\x00' * 200)


def test_only_the_prefix_is_checked():
    # a matching prefix is enough, the rest of the data is not inspected
    assert classify(b'\x89PNG' + b'garbage' * 30) is ImageKind.PNG
