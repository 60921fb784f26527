from sources.base import ChapterConfidence, SourceKind
from sources.normalize import (
    count_from_chapter_list, estimate_from_last_chapter, genre_tag,
    infer_content_rating, infer_content_type, map_status,
    normalize_aggregator_title, normalize_canonical_title, parse_year,
    preferred_text,
)


def test_map_status_free_text():
    assert map_status("Ongoing") == "ongoing"
    assert map_status("Publishing") == "ongoing"
    assert map_status("Finished") == "completed"
    assert map_status("On Hiatus") == "hiatus"
    assert map_status("Canceled") == "cancelled"
    assert map_status("???") == "unknown"
    assert map_status(None) == "unknown"


def test_content_type_inference_order():
    assert infer_content_type(["Martial Arts"], "") == "manhua"
    assert infer_content_type(["Full Color"], "") == "webtoon"
    assert infer_content_type(["Korean"], "") == "manhwa"
    assert infer_content_type([], "Some Title") == "manhwa"
    # An explicitly requested subtype wins over hints
    assert infer_content_type(["Cultivation"], "", requested="webtoon") == "webtoon"


def test_content_rating_inference():
    assert infer_content_rating(["Hentai"]) == "pornographic"
    assert infer_content_rating(["Smut"]) == "erotica"
    assert infer_content_rating(["Ecchi"]) == "suggestive"
    assert infer_content_rating(["Action"]) == "safe"


def test_genre_tag_groups_and_ids():
    tag = genre_tag("Time Travel")
    assert tag.id == "consumet-genre-time-travel"
    assert tag.group == "theme"
    assert genre_tag("Long Strip").group == "format"
    assert genre_tag("Gore").group == "content"
    assert genre_tag("Comedy").group == "genre"


def test_parse_year():
    assert parse_year(2019) == 2019
    assert parse_year("Released 2015-03") == 2015
    assert parse_year(1200) is None
    assert parse_year("unknown") is None
    assert parse_year(True) is None


def test_chapter_estimates():
    assert estimate_from_last_chapter("123.5").value == 123
    assert estimate_from_last_chapter("123.5").confidence == ChapterConfidence.ESTIMATED
    assert estimate_from_last_chapter("").confidence == ChapterConfidence.UNKNOWN
    assert estimate_from_last_chapter("extra").value is None


def test_chapter_list_count_prefers_highest_number():
    chapters = [{"chapterNumber": 1}, {"chapterNumber": "12.5"}, {"chapterNumber": None}]
    count = count_from_chapter_list(chapters)
    assert count.confidence == ChapterConfidence.EXACT
    assert count.value == 12
    assert count_from_chapter_list([{"chapterNumber": None}, {}]).value == 2
    assert count_from_chapter_list([]).confidence == ChapterConfidence.UNKNOWN


def test_normalize_aggregator_title():
    raw = {
        "id": "solo-leveling",
        "title": "Solo Leveling",
        "genres": ["Action", "Manhwa"],
        "status": "Completed",
        "releaseDate": "2018",
        "chapters": [{"chapterNumber": 200}, {"chapterNumber": 179}],
    }
    title = normalize_aggregator_title(raw, "asurascans")

    assert title.source_kind == SourceKind.AGGREGATOR
    assert title.provider_name == "asurascans"
    assert title.dedup_key == "asurascans:solo-leveling"
    assert title.content_type == "manhwa"
    assert title.original_language == "ko"
    assert title.status == "completed"
    assert title.year == 2018
    assert title.total_chapters.value == 200
    assert title.last_chapter == "200"
    assert [t.id for t in title.tags] == ["consumet-genre-action", "consumet-genre-manhwa"]


def test_normalize_aggregator_title_defaults():
    title = normalize_aggregator_title({"id": "x", "genres": ["Cultivation", 3, " "]}, "mangapark")
    assert title.title == "Untitled"
    assert title.content_type == "manhua"
    assert title.original_language == "zh"
    assert len(title.tags) == 1
    assert title.total_chapters.confidence == ChapterConfidence.UNKNOWN
    assert title.cover_image.startswith("https://placeholder.pics")


def test_preferred_text_order():
    assert preferred_text({"ja-ro": "Romaji", "ja": "Japanese"}) == "Japanese"
    assert preferred_text({"fr": "Titre"}) == "Titre"
    assert preferred_text(None, "fallback") == "fallback"


def test_normalize_canonical_title_with_statistics():
    doc = {
        "id": "md-1",
        "attributes": {
            "title": {"en": "Frieren"},
            "altTitles": [{"ja": "葬送のフリーレン"}, {}],
            "description": {"en": "After the party..."},
            "originalLanguage": "ja",
            "status": "ongoing",
            "contentRating": "safe",
            "publicationDemographic": "shounen",
            "year": 2020,
            "lastChapter": "",
            "updatedAt": "2024-05-01T10:00:00+00:00",
            "tags": [{"id": "t1", "attributes": {"name": {"en": "Fantasy"}, "group": "genre"}}],
        },
        "relationships": [{"type": "cover_art", "id": "cover-9"}],
    }
    stats = {"md-1": {"follows": 500, "chapters": 120}}

    title = normalize_canonical_title(doc, stats)

    assert title.title == "Frieren"
    assert title.alt_titles == ["葬送のフリーレン"]
    assert title.content_type == "manga"
    assert title.demographic == "shounen"
    assert title.last_chapter is None
    assert title.total_chapters.confidence == ChapterConfidence.EXACT
    assert title.total_chapters.value == 120
    assert title.followed_count == 500
    assert title.cover_image == "/api/cover-image/md-1/cover-9"
    assert title.tags[0].name == "Fantasy"


def test_normalize_canonical_title_estimates_without_statistics():
    doc = {"id": "md-2", "attributes": {"title": {"ja": "X"}, "originalLanguage": "ko",
                                        "lastChapter": "45", "contentRating": "weird"}}
    title = normalize_canonical_title(doc)
    assert title.content_type == "manhwa"
    assert title.content_rating == "safe"
    assert title.total_chapters.confidence == ChapterConfidence.ESTIMATED
    assert title.total_chapters.value == 45
