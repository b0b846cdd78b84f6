from datetime import datetime, timezone

from models import Enclosure, Extension, RawItem
from normalizer import (
    NO_EMAIL_CONTENT,
    UNTITLED,
    clean_email_content,
    extract_audio_url,
    extract_content,
    extract_image_url,
    extract_media_thumbnail,
    generate_title_from_content,
    process_articles,
    resolve_title,
)


def media_group(**children):
    return {
        "media": {
            "group": [Extension(
                name="group",
                children={name: [ext] for name, ext in children.items()},
            )]
        }
    }


def test_content_encoded_beats_description():
    item = RawItem(content="<p>Full</p>", description="Short")
    assert extract_content(item) == "<p>Full</p>"


def test_media_group_description_wins():
    item = RawItem(
        content="other",
        description="short",
        extensions=media_group(description=Extension(name="description", value="YT desc")),
    )
    assert extract_content(item) == "YT desc"


def test_direct_media_description_wins():
    item = RawItem(
        content="other",
        extensions={"media": {"description": [Extension(name="description", value="direct")]}},
    )
    assert extract_content(item) == "direct"


def test_description_used_when_nothing_else():
    assert extract_content(RawItem(description="Short")) == "Short"


def test_empty_item_has_empty_content():
    assert extract_content(RawItem()) == ""


def test_generated_title_is_truncated():
    text = "<p>" + "word " * 40 + "</p>"
    title = generate_title_from_content(text)
    assert title.endswith("...")
    assert len(title) == 103
    assert "<" not in title


def test_generated_title_fallback():
    assert generate_title_from_content("<p> </p>") == UNTITLED
    assert generate_title_from_content("") == UNTITLED


def test_longer_media_title_wins():
    item = RawItem(
        title="Short",
        extensions=media_group(title=Extension(name="title", value="A much longer media title")),
    )
    assert resolve_title(item) == "A much longer media title"


def test_title_from_description_when_content_empty():
    item = RawItem(description="<b>Only a description</b>")
    assert resolve_title(item) == "Only a description"


def test_image_priority():
    thumbnail = {"media": {"thumbnail": [Extension(name="thumbnail", attrs={"url": "https://img/thumb.jpg"})]}}
    enclosure = [Enclosure(url="https://img/enc.png", type="image/png")]
    body = '<p><img src="https://img/inline.gif"></p>'

    assert extract_image_url(RawItem(image_url="https://img/own.jpg", extensions=thumbnail)) == "https://img/own.jpg"
    assert extract_image_url(RawItem(extensions=thumbnail, enclosures=enclosure)) == "https://img/thumb.jpg"
    assert extract_image_url(RawItem(enclosures=enclosure, content=body)) == "https://img/enc.png"
    assert extract_image_url(RawItem(description=body)) == "https://img/inline.gif"
    assert extract_image_url(RawItem()) == ""


def test_group_thumbnail_before_direct_thumbnail():
    item = RawItem(extensions={
        "media": {
            "group": [Extension(name="group", children={
                "thumbnail": [Extension(name="thumbnail", attrs={"url": "https://img/group.jpg"})],
            })],
            "thumbnail": [Extension(name="thumbnail", attrs={"url": "https://img/direct.jpg"})],
        }
    })
    assert extract_media_thumbnail(item) == "https://img/group.jpg"


def test_audio_enclosure():
    item = RawItem(enclosures=[
        Enclosure(url="https://cdn/cover.jpg", type="image/jpeg"),
        Enclosure(url="https://cdn/episode.mp3", type="audio/mpeg"),
    ])
    assert extract_audio_url(item) == "https://cdn/episode.mp3"
    assert extract_audio_url(RawItem()) == ""


class UpperTranslator:
    def translate(self, text, target_language):
        return f"[{target_language}] {text.upper()}"


class BrokenTranslator:
    def translate(self, text, target_language):
        raise RuntimeError("quota exceeded")


def test_process_articles_defaults():
    published = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    items = [
        RawItem(title="Dated", link="https://e/1", published=published, content="c"),
        RawItem(link="https://e/2", content=""),
    ]
    before = datetime.now(timezone.utc)
    articles = process_articles(7, items)

    assert [a.feed_id for a in articles] == [7, 7]
    assert articles[0].published_at == published
    assert articles[1].published_at >= before
    assert articles[1].title == UNTITLED
    assert all(a.translated_title == "" for a in articles)


def test_process_articles_translates_titles():
    articles = process_articles(1, [RawItem(title="hello")], UpperTranslator(), "fr")
    assert articles[0].translated_title == "[fr] HELLO"
    assert articles[0].title == "hello"


def test_translation_failure_keeps_article():
    articles = process_articles(1, [RawItem(title="hello")], BrokenTranslator(), "fr")
    assert articles[0].title == "hello"
    assert articles[0].translated_title == ""


def test_article_to_dict_serializes_date():
    article = process_articles(None, [RawItem(title="t", published=datetime(2025, 5, 1, tzinfo=timezone.utc))])[0]
    assert article.to_dict()["published_at"] == "2025-05-01T00:00:00+00:00"


def test_clean_email_content_marks_tracking():
    body = ' <img src="https://track.example/p.gif"><style>p{}</style> '
    cleaned = clean_email_content(body)
    assert cleaned.startswith('<img data-tracking="true" src="https://track.example/p.gif">')
    assert '<style data-remove="true">' in cleaned
    assert clean_email_content(NO_EMAIL_CONTENT) == NO_EMAIL_CONTENT
