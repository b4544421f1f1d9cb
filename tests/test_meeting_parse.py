import pytest

from filmclub_bot import (
    HistoryEntry,
    MeetingRecord,
    ValidationError,
    VotingRecord,
    day_of_week,
    format_history_entry,
    format_movie_card,
    format_social_post,
    missing_post_fields,
    parse_next_meeting,
)


VALID = (
    "20.06.2025|19:00|Cafe Odyssey|Stalker|Andrei Tarkovsky|Drama|USSR|1979|"
    "https://example.com/stalker.jpg|42|Alexander Kaidanovsky"
)


def test_parse_next_meeting_maps_all_fields():
    meeting = parse_next_meeting(VALID)

    assert meeting.date == "20.06.2025"
    assert meeting.place == "Cafe Odyssey"
    assert meeting.film == "Stalker"
    assert meeting.year == 1979
    assert meeting.poster == "https://example.com/stalker.jpg"
    assert meeting.discussion_number == 42
    assert meeting.cast == "Alexander Kaidanovsky"
    assert meeting.is_announced()


def test_parse_next_meeting_strips_whitespace():
    meeting = parse_next_meeting(VALID.replace("|", " | "))
    assert meeting.time == "19:00"
    assert meeting.director == "Andrei Tarkovsky"


def test_one_field_short_reports_expected_and_received_counts():
    short = VALID.rsplit("|", 1)[0]

    with pytest.raises(ValidationError) as excinfo:
        parse_next_meeting(short)

    message = str(excinfo.value)
    assert "expected 11" in message
    assert "received 10" in message


@pytest.mark.parametrize("number", ["forty-two", "0", "", "4.5"])
def test_discussion_number_must_be_positive_integer(number):
    parts = VALID.split("|")
    parts[9] = number
    with pytest.raises(ValidationError, match="discussion number"):
        parse_next_meeting("|".join(parts))


def test_empty_film_is_rejected():
    parts = VALID.split("|")
    parts[3] = " "
    with pytest.raises(ValidationError):
        parse_next_meeting("|".join(parts))


def test_non_numeric_year_is_kept_verbatim():
    parts = VALID.split("|")
    parts[7] = "1979-1980"
    assert parse_next_meeting("|".join(parts)).year == "1979-1980"


@pytest.mark.parametrize(
    "date_text, expected",
    [("20.06.2025", "FRIDAY"), ("01.01.2024", "MONDAY"), ("tomorrow", "DAY"), ("31.02.2025", "DAY")],
)
def test_day_of_week(date_text, expected):
    assert day_of_week(date_text) == expected


def test_social_post_template(meeting):
    post = format_social_post(meeting, "Odyssey")

    assert post.startswith("🎬 Discussion #42")
    assert "20.06.2025 (FRIDAY)" in post
    assert "«Stalker» (1979)" in post
    assert "Starring: Alexander Kaidanovsky" in post
    assert "Place: Cafe Odyssey" in post
    assert "Odyssey film club" in post


def test_missing_post_fields_lists_required_labels():
    meeting = MeetingRecord(film="Stalker", director="Tarkovsky", date="20.06.2025")
    assert missing_post_fields(meeting) == ["time", "place", "discussion number"]


def test_movie_card_shows_rating_block_only_with_scores(meeting):
    idle_card = format_movie_card(meeting, VotingRecord())
    assert "Rating:" not in idle_card
    assert "Stalker" in idle_card

    voting = VotingRecord(film="Stalker", ratings={"participant_1": 7, "participant_2": 8}, average=7.5)
    rated_card = format_movie_card(meeting, voting)
    assert "7.5/10" in rated_card
    assert "<b>Scores:</b> 2" in rated_card


def test_card_escapes_html(meeting):
    meeting.film = "<Stalker & Co>"
    card = format_movie_card(meeting, VotingRecord())
    assert "&lt;Stalker &amp; Co&gt;" in card


def test_history_entry_format():
    text = format_history_entry(
        HistoryEntry(film="Solaris", year=1972, average=8.5, participants=4, discussion_number=41)
    )
    assert "Solaris" in text
    assert "8.5/10" in text
    assert "#41" in text
    assert "Description" not in text
