import pytest

from filmclub_bot import (
    RATING_CLOSED,
    RATING_IDLE,
    RATING_OPEN,
    MeetingRecord,
    ValidationError,
    VotingBook,
    WorkflowError,
    calculate_average,
)


@pytest.fixture
def voting_book(store):
    return VotingBook(store)


def test_average_of_empty_ratings_is_none():
    assert calculate_average({}) is None


def test_average_is_recomputed_from_all_scores():
    ratings = {"a": 8, "b": 9, "c": 7}
    assert calculate_average(ratings) == 8.0

    ratings["d"] = 10
    assert calculate_average(ratings) == pytest.approx(34 / 4)


def test_open_rating_copies_meeting_fields(voting_book, meeting):
    voting = voting_book.open_rating(meeting)

    assert voting.state == RATING_OPEN
    assert voting.film == "Stalker"
    assert voting.director == "Andrei Tarkovsky"
    assert voting.discussion_number == 42
    assert voting.date == "20.06.2025"
    assert voting.description == "Alexander Kaidanovsky"
    assert voting_book.load().film == "Stalker"


def test_open_rating_twice_keeps_existing_scores(voting_book, meeting):
    voting_book.open_rating(meeting)
    voting_book.record_score(7)
    voting_book.record_score(9)

    other = MeetingRecord(film="Mirror", director="Tarkovsky", discussion_number=43, date="27.06.2025")
    voting = voting_book.open_rating(other)

    assert voting.film == "Stalker"
    assert voting.ratings == {"participant_1": 7, "participant_2": 9}
    assert voting.average == 8.0


def test_open_rating_refused_without_announced_meeting(voting_book):
    with pytest.raises(WorkflowError):
        voting_book.open_rating(MeetingRecord.placeholder())
    assert voting_book.load().state == RATING_IDLE


def test_record_score_assigns_sequential_participants(voting_book, meeting):
    voting_book.open_rating(meeting)
    for score in (6, 7, 8):
        voting = voting_book.record_score(score)

    assert list(voting.ratings) == ["participant_1", "participant_2", "participant_3"]
    assert voting.average == 7.0


@pytest.mark.parametrize("bad", [0, 11, -3, "7", 7.5, True, None])
def test_record_score_rejects_out_of_range(voting_book, meeting, bad):
    voting_book.open_rating(meeting)
    with pytest.raises(ValidationError):
        voting_book.record_score(bad)
    assert voting_book.load().ratings == {}


def test_record_score_requires_open_round(voting_book):
    with pytest.raises(WorkflowError):
        voting_book.record_score(5)


def test_finish_without_scores_fails(voting_book, meeting):
    voting_book.open_rating(meeting)
    with pytest.raises(WorkflowError):
        voting_book.finish()
    assert voting_book.load().state == RATING_OPEN


def test_finished_round_refuses_scores_until_reopened(voting_book, meeting):
    voting_book.open_rating(meeting)
    voting_book.record_score(8)
    assert voting_book.finish().state == RATING_CLOSED

    with pytest.raises(WorkflowError):
        voting_book.record_score(9)

    reopened = voting_book.open_rating(meeting)
    assert reopened.state == RATING_OPEN
    assert reopened.ratings == {"participant_1": 8}
    assert voting_book.record_score(10).average == 9.0


def test_clear_wipes_scores_but_keeps_film(voting_book, meeting):
    voting_book.open_rating(meeting)
    voting_book.record_score(4)
    voting_book.finish()

    voting = voting_book.clear()

    assert voting.ratings == {}
    assert voting.average is None
    assert voting.state == RATING_OPEN
    assert voting.film == "Stalker"


def test_clear_from_idle_stays_idle(voting_book):
    assert voting_book.clear().state == RATING_IDLE


def test_score_cap_is_enforced_when_configured(store, meeting):
    capped = VotingBook(store, max_scores=2)
    capped.open_rating(meeting)
    capped.record_score(5)
    capped.record_score(6)

    with pytest.raises(WorkflowError, match="maximum of 2"):
        capped.record_score(7)
