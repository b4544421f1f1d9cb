import dataclasses

import pytest

from filmclub_bot import (
    PLACEHOLDER_FILM,
    ArchiveWorkflow,
    ContentPushError,
    HistoryBook,
    HistoryEntry,
    MeetingRecord,
    MeetingBook,
    SpreadsheetError,
    ValidationError,
    VotingBook,
    WorkflowError,
)


@pytest.fixture
def books(store, meeting):
    meetings = MeetingBook(store)
    meetings.replace(meeting)
    return VotingBook(store), meetings, HistoryBook(store)


@pytest.fixture
def workflow(books, content_client, sheets_client):
    voting, meetings, history = books
    return ArchiveWorkflow(
        voting_book=voting,
        meeting_book=meetings,
        history_book=history,
        content_client=content_client,
        sheets_client=sheets_client,
    )


def rate(voting_book, meeting, scores):
    voting_book.open_rating(meeting)
    for score in scores:
        voting_book.record_score(score)
    voting_book.finish()


@pytest.mark.asyncio
async def test_archive_round_trip(books, workflow, meeting, content_client, sheets_client):
    voting, meetings, history = books
    rate(voting, meeting, [6, 7, 8, 9, 10])

    entry = await workflow.archive()

    assert entry.average == 8.0
    assert entry.participants == 5
    assert entry.film == "Stalker"
    assert entry.discussion_number == 42

    after = voting.load()
    assert after.film is None
    assert after.average is None
    assert after.ratings == {}
    assert meetings.current().film == PLACEHOLDER_FILM
    assert [e.film for e in history.load()] == ["Stalker"]

    assert content_client.history_pushes[-1][-1]["average"] == 8.0
    assert sheets_client.rows[0][5] == "8.0"


@pytest.mark.asyncio
async def test_full_history_is_pushed_not_just_the_new_entry(books, workflow, meeting, content_client):
    voting, _, history = books
    history.save([HistoryEntry(film="Solaris", average=9.0, participants=3, discussion_number=41)])
    rate(voting, meeting, [8])

    await workflow.archive()

    pushed = content_client.history_pushes[-1]
    assert [item["film"] for item in pushed] == ["Solaris", "Stalker"]
    assert pushed[1]["discussionNumber"] == 42


@pytest.mark.asyncio
async def test_spreadsheet_failure_leaves_local_state_untouched(
    books, workflow, meeting, content_client, sheets_client
):
    voting, meetings, history = books
    rate(voting, meeting, [7, 9])
    before = voting.load()
    sheets_client.error = SpreadsheetError("Google Sheets API error 403: denied", status=403)

    with pytest.raises(SpreadsheetError) as excinfo:
        await workflow.archive()

    assert "403" in str(excinfo.value)
    assert content_client.history_pushes  # the content push already happened
    assert history.load() == []
    assert voting.load() == before
    assert meetings.current().film == "Stalker"


@pytest.mark.asyncio
async def test_content_failure_skips_spreadsheet_and_local_commit(
    books, workflow, meeting, content_client, sheets_client
):
    voting, _, history = books
    rate(voting, meeting, [5])
    content_client.error = ContentPushError("GitHub API error 401", status=401, attempts=3)

    with pytest.raises(ContentPushError):
        await workflow.archive()

    assert sheets_client.rows == []
    assert history.load() == []
    assert voting.load().ratings == {"participant_1": 5}


@pytest.mark.asyncio
async def test_retry_after_failure_succeeds(books, workflow, meeting, sheets_client):
    voting, _, history = books
    rate(voting, meeting, [9, 9])
    sheets_client.error = SpreadsheetError("timeout", status=0)
    with pytest.raises(SpreadsheetError):
        await workflow.archive()

    sheets_client.error = None
    entry = await workflow.archive()

    assert entry.participants == 2
    assert len(history.load()) == 1


@pytest.mark.asyncio
async def test_missing_required_fields_abort_without_changes(store, content_client, sheets_client):
    meetings = MeetingBook(store)
    voting = VotingBook(store)
    history = HistoryBook(store)
    voting.open_rating(MeetingRecord(film="Untitled", director="", discussion_number=None, date="01.01.2025"))
    voting.record_score(6)
    workflow = ArchiveWorkflow(
        voting_book=voting,
        meeting_book=meetings,
        history_book=history,
        content_client=content_client,
        sheets_client=sheets_client,
    )

    with pytest.raises(ValidationError) as excinfo:
        await workflow.archive()

    assert "director" in str(excinfo.value)
    assert "discussion number" in str(excinfo.value)
    assert content_client.history_pushes == []
    assert voting.load().ratings == {"participant_1": 6}


@pytest.mark.asyncio
async def test_archive_without_scores_is_refused(books, workflow, meeting, content_client):
    voting, _, _ = books
    voting.open_rating(meeting)

    with pytest.raises(WorkflowError):
        await workflow.archive()
    assert content_client.history_pushes == []


@pytest.mark.asyncio
async def test_archive_without_spreadsheet_mirror(books, meeting, content_client):
    voting, meetings, history = books
    workflow = ArchiveWorkflow(
        voting_book=voting,
        meeting_book=meetings,
        history_book=history,
        content_client=content_client,
        sheets_client=None,
    )
    rate(voting, meeting, [10])

    entry = await workflow.archive()

    assert entry.average == 10.0
    assert len(history.load()) == 1


@pytest.mark.asyncio
async def test_edit_entry_pushes_then_saves(books, workflow, content_client):
    _, _, history = books
    history.save([HistoryEntry(film="Solaris", year=1971, average=9.0, participants=3, discussion_number=41)])

    edited = await workflow.edit_entry(41, "year", "1972")

    assert edited.year == 1972
    assert history.load()[0].year == 1972
    assert content_client.history_pushes[-1][0]["year"] == 1972


@pytest.mark.asyncio
async def test_edit_entry_rejects_unknown_field_and_number(books, workflow):
    _, _, history = books
    history.save([HistoryEntry(film="Solaris", discussion_number=41)])

    with pytest.raises(ValidationError):
        await workflow.edit_entry(41, "average", "10")
    with pytest.raises(ValidationError):
        await workflow.edit_entry(99, "film", "Mirror")


@pytest.mark.asyncio
async def test_failed_edit_keeps_local_history(books, workflow, content_client):
    _, _, history = books
    history.save([HistoryEntry(film="Solaris", discussion_number=41)])
    content_client.error = ContentPushError("GitHub API error 409", status=409)

    with pytest.raises(ContentPushError):
        await workflow.edit_entry(41, "film", "Mirror")
    assert history.load()[0].film == "Solaris"


@pytest.mark.asyncio
async def test_archive_keeps_meeting_announced_during_the_round(books, workflow, meeting):
    voting, meetings, history = books
    rate(voting, meeting, [8])
    meetings.replace(dataclasses.replace(meeting, film="Mirror", date="27.06.2025", discussion_number=43))

    await workflow.archive()

    assert [e.film for e in history.load()] == ["Stalker"]
    assert meetings.current().film == "Mirror"
    assert meetings.current().discussion_number == 43
    assert voting.load().film is None
