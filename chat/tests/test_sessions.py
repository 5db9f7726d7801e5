import random
from datetime import datetime, timedelta, timezone

from django.test import SimpleTestCase, override_settings

from chat.exceptions import InvalidEntry, SessionNotFound
from chat.sessions import (
    EPOCH,
    ChatLogEntry,
    SessionClusterer,
    get_session_messages,
    group_into_sessions,
    parse_timestamp,
)

MARK = "__new_chat_session__"
T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def row(id, *, doc="D1", sid=None, q=None, at=0, user="u1", name="Report.pdf", type_="pdf"):
    return ChatLogEntry(
        id=id,
        user_id=user,
        doc_id=doc,
        doc_name=name,
        doc_type=type_,
        question=q if q is not None else f"question {id}",
        answer="New chat session started" if q == MARK else f"answer {id}",
        created_at=T0 + timedelta(seconds=at),
        chat_session_id=sid,
    )


def marker(id, **kw):
    return row(id, q=MARK, **kw)


def all_ids(sessions):
    ids = []
    for s in sessions:
        ids.append(s.anchor.id)
        ids += [a.id for a in s.absorbed]
        ids += [m.id for m in s.messages]
    return ids


def shape(sessions):
    return [(s.session_key, s.anchor.id, [m.id for m in s.messages]) for s in sessions]


class ExplicitSessionTests(SimpleTestCase):
    def test_marker_and_message_make_one_session(self):
        sessions = group_into_sessions([
            marker("a", sid="S1"),
            row("b", sid="S1", q="What is this?", at=10),
        ])
        self.assertEqual(len(sessions), 1)
        s = sessions[0]
        self.assertEqual(s.session_key, "S1")
        self.assertEqual([m.id for m in s.messages], ["b"])
        self.assertEqual(s.message_count, 1)
        self.assertEqual(s.last_message, "What is this?")
        self.assertEqual(s.created_at, T0)
        self.assertEqual(s.doc_name, "Report.pdf")

    def test_shared_id_wins_over_ten_days_distance(self):
        ten_days = 10 * 24 * 3600
        sessions = group_into_sessions([
            marker("a", sid="S1"),
            row("b", sid="S1", at=60),
            row("c", sid="S1", at=ten_days),
        ])
        self.assertEqual(len(sessions), 1)
        self.assertEqual([m.id for m in sessions[0].messages], ["b", "c"])
        self.assertEqual(sessions[0].last_message, "question c")

    def test_shared_id_without_marker_still_groups(self):
        sessions = group_into_sessions([
            row("x", sid="S9", at=0),
            row("y", sid="S9", at=5 * 24 * 3600),
        ])
        self.assertEqual(len(sessions), 1)
        self.assertEqual(sessions[0].session_key, "S9")
        self.assertEqual(sessions[0].anchor.id, "y")
        self.assertEqual([m.id for m in sessions[0].messages], ["x"])

    def test_message_newer_than_its_marker_is_collected_by_marker(self):
        sessions = group_into_sessions([
            row("m2", sid="S1", at=300),
            row("m1", sid="S1", at=100),
            marker("a", sid="S1", at=0),
        ])
        self.assertEqual(len(sessions), 1)
        self.assertEqual(sessions[0].anchor.id, "a")
        self.assertEqual([m.id for m in sessions[0].messages], ["m1", "m2"])

    def test_repeated_marker_is_absorbed(self):
        sessions = group_into_sessions([
            marker("a", sid="S1", at=0),
            marker("a2", sid="S1", at=5),
            row("b", sid="S1", at=10),
        ])
        self.assertEqual(len(sessions), 1)
        self.assertEqual(sessions[0].anchor.id, "a2")
        self.assertEqual([x.id for x in sessions[0].absorbed], ["a"])
        self.assertEqual(sessions[0].message_count, 1)

    def test_explicit_rows_are_not_pulled_in_by_proximity(self):
        sessions = group_into_sessions([
            row("legacy", at=0),
            row("e1", sid="S1", at=60),
            row("e2", sid="S1", at=2 * 24 * 3600),
        ])
        by_key = {s.session_key: s for s in sessions}
        self.assertEqual(set(by_key), {"legacy", "S1"})
        self.assertEqual(by_key["legacy"].message_count, 0)
        self.assertEqual(
            {by_key["S1"].anchor.id} | {m.id for m in by_key["S1"].messages},
            {"e1", "e2"},
        )


class WindowFallbackTests(SimpleTestCase):
    def test_3599_seconds_apart_same_session(self):
        sessions = group_into_sessions([row("a", at=0), row("b", at=3599)])
        self.assertEqual(len(sessions), 1)

    def test_3600_seconds_is_inside_the_window(self):
        sessions = group_into_sessions([row("a", at=0), row("b", at=3600)])
        self.assertEqual(len(sessions), 1)

    def test_3601_seconds_apart_different_sessions(self):
        sessions = group_into_sessions([row("a", at=0), row("b", at=3601)])
        self.assertEqual(len(sessions), 2)

    def test_two_legacy_rows_thirty_minutes_apart(self):
        sessions = group_into_sessions([row("early", at=0), row("late", at=1800)])
        self.assertEqual(len(sessions), 1)
        s = sessions[0]
        self.assertEqual(s.anchor.id, "late")
        self.assertEqual(s.session_key, "late")
        self.assertEqual(s.message_count, 1)
        self.assertEqual({e.id for e in s.transcript}, {"early", "late"})

    def test_marker_without_id_collects_same_document_window(self):
        sessions = group_into_sessions([
            marker("m", at=3600),
            row("in", at=2400),
            row("other-doc", doc="D2", at=2400),
            row("too-early", at=-3600),
        ])
        by_key = {s.session_key: s for s in sessions}
        self.assertEqual([x.id for x in by_key["m"].messages], ["in"])
        self.assertIn("other-doc", by_key)
        self.assertIn("too-early", by_key)

    def test_rows_newer_than_an_unnamed_marker_anchor_themselves(self):
        sessions = group_into_sessions([marker("m", at=0), row("after", at=600)])
        by_key = {s.session_key: s for s in sessions}
        self.assertEqual(by_key["m"].message_count, 0)
        self.assertEqual(by_key["after"].message_count, 0)

    def test_chain_is_split_at_the_window_edge(self):
        sessions = group_into_sessions([
            row("t0", at=0),
            row("t50", at=50 * 60),
            row("t100", at=100 * 60),
        ])
        self.assertEqual(shape(sessions), [("t100", "t100", ["t50"]), ("t0", "t0", [])])

    def test_window_is_configurable(self):
        clusterer = SessionClusterer(window=60)
        sessions = clusterer.group_into_sessions([row("a", at=0), row("b", at=61)])
        self.assertEqual(len(sessions), 2)

    @override_settings(CHAT_SESSION_WINDOW_SECONDS=7200)
    def test_window_defaults_to_settings(self):
        sessions = group_into_sessions([row("a", at=0), row("b", at=5400)])
        self.assertEqual(len(sessions), 1)

    def test_negative_window_rejected(self):
        with self.assertRaises(ValueError):
            SessionClusterer(window=-1)


class EmptyAndOrderingTests(SimpleTestCase):
    def test_lonely_marker_is_empty_session(self):
        sessions = group_into_sessions([marker("a", sid="S1")])
        self.assertEqual(sessions[0].message_count, 0)
        self.assertEqual(sessions[0].last_message, "New chat")
        self.assertEqual(sessions[0].transcript, [])

    def test_lonely_orphan_is_empty_session(self):
        sessions = group_into_sessions([row("solo")])
        self.assertEqual(sessions[0].message_count, 0)
        self.assertEqual(sessions[0].last_message, "New chat")
        self.assertEqual([e.id for e in sessions[0].transcript], ["solo"])

    def test_sessions_are_newest_first(self):
        sessions = group_into_sessions([
            marker("old", sid="S-old", at=0),
            marker("new", sid="S-new", at=10 * 3600),
            row("mid", doc="D2", at=5 * 3600),
        ])
        self.assertEqual([s.session_key for s in sessions], ["S-new", "mid", "S-old"])

    def test_equal_timestamps_ordered_by_id(self):
        sessions = group_into_sessions([
            marker("a", sid="S1", at=0),
            row("c", sid="S1", at=30),
            row("b", sid="S1", at=30),
        ])
        self.assertEqual([m.id for m in sessions[0].messages], ["b", "c"])

    def test_empty_input(self):
        self.assertEqual(group_into_sessions([]), [])

    def test_missing_doc_metadata_defaults(self):
        sessions = group_into_sessions([row("a", name="", type_="")])
        self.assertEqual(sessions[0].doc_name, "Untitled Document")
        self.assertEqual(sessions[0].doc_type, "unknown")


class PropertyTests(SimpleTestCase):
    def _random_log(self, seed=11, n=100, docs=5):
        rnd = random.Random(seed)
        rows = []
        for i in range(n):
            doc = f"D{rnd.randrange(docs)}"
            at = rnd.randrange(0, 2 * 3600)
            pick = rnd.random()
            if pick < 0.1:
                rows.append(marker(f"r{i:03d}", doc=doc, at=at, sid=rnd.choice([None, "S1", "S2"])))
            elif pick < 0.3:
                rows.append(row(f"r{i:03d}", doc=doc, at=at, sid=rnd.choice(["S1", "S2", "S3"])))
            else:
                rows.append(row(f"r{i:03d}", doc=doc, at=at))
        return rows

    def test_every_row_lands_in_exactly_one_session(self):
        rows = self._random_log()
        ids = all_ids(group_into_sessions(rows))
        self.assertEqual(len(ids), len(set(ids)))
        self.assertEqual(sorted(ids), sorted(r.id for r in rows))

    def test_markers_never_appear_in_messages(self):
        for s in group_into_sessions(self._random_log(seed=3)):
            self.assertFalse(any(m.question == MARK for m in s.messages))

    def test_grouping_is_independent_of_input_order(self):
        rows = self._random_log(seed=5)
        expected = shape(group_into_sessions(rows))
        rnd = random.Random(99)
        for _ in range(5):
            shuffled = list(rows)
            rnd.shuffle(shuffled)
            self.assertEqual(shape(group_into_sessions(shuffled)), expected)

    def test_legacy_sessions_never_mix_documents(self):
        rnd = random.Random(21)
        rows = [
            row(f"r{i:03d}", doc=f"D{rnd.randrange(5)}", at=rnd.randrange(0, 2 * 3600))
            for i in range(100)
        ]
        for s in group_into_sessions(rows):
            self.assertTrue(all(m.doc_id == s.doc_id for m in s.messages))

    def test_shared_ids_always_share_a_session(self):
        rows = self._random_log(seed=8)
        home = {}
        for s in group_into_sessions(rows):
            for e in [s.anchor] + s.absorbed + s.messages:
                home[e.id] = s.session_key
        for sid in ("S1", "S2", "S3"):
            keys = {home[r.id] for r in rows if r.chat_session_id == sid}
            self.assertLessEqual(len(keys), 1)

    def test_deleting_a_row_drops_one_message(self):
        rows = self._random_log(seed=13)
        before = sum(len(s.transcript) for s in group_into_sessions(rows))
        victim = next(r for r in rows if r.question != MARK)
        remaining = [r for r in rows if r.id != victim.id]
        after = sum(len(s.transcript) for s in group_into_sessions(remaining))
        self.assertEqual(after, before - 1)


class InputValidationTests(SimpleTestCase):
    def _raw(self, **overrides):
        data = {
            "id": "r1",
            "user_id": "u1",
            "doc_id": "D1",
            "doc_name": "Report.pdf",
            "doc_type": "pdf",
            "question": "q",
            "answer": "a",
            "chat_session_id": None,
            "created_at": "2025-03-01T12:00:00Z",
        }
        data.update(overrides)
        return data

    def test_accepts_mappings(self):
        sessions = group_into_sessions([self._raw()])
        self.assertEqual(sessions[0].created_at, T0)

    def test_missing_mandatory_field_rejected(self):
        for field in ("id", "user_id", "doc_id", "question", "answer", "created_at"):
            bad = self._raw()
            del bad[field]
            with self.assertRaises(InvalidEntry, msg=field):
                group_into_sessions([bad])

    def test_blank_ids_rejected(self):
        with self.assertRaises(InvalidEntry):
            group_into_sessions([self._raw(doc_id="  ")])

    def test_duplicate_ids_rejected(self):
        with self.assertRaises(InvalidEntry):
            group_into_sessions([self._raw(), self._raw()])

    def test_unparsable_timestamp_sorts_oldest(self):
        sessions = group_into_sessions([
            self._raw(id="bad", doc_id="D2", created_at="yesterday-ish"),
            self._raw(id="good"),
        ])
        self.assertEqual([s.session_key for s in sessions], ["good", "bad"])
        self.assertEqual(sessions[1].created_at, EPOCH)

    def test_empty_session_id_is_treated_as_missing(self):
        entry = ChatLogEntry.from_row(self._raw(chat_session_id=""))
        self.assertIsNone(entry.chat_session_id)

    def test_to_row_round_trips(self):
        entry = ChatLogEntry.from_row(self._raw(chat_session_id="S1"))
        self.assertEqual(ChatLogEntry.from_row(entry.to_row()), entry)

    def test_entry_without_id_rejected(self):
        with self.assertRaises(InvalidEntry):
            group_into_sessions([row(None), row("b")])

    def test_entry_without_doc_rejected(self):
        with self.assertRaises(InvalidEntry):
            group_into_sessions([row("a", doc=None)])

    def test_entry_with_blank_user_rejected(self):
        bad = ChatLogEntry(
            id="a", user_id=" ", doc_id="D1", question="q", answer="a", created_at=T0,
        )
        with self.assertRaises(InvalidEntry):
            group_into_sessions([bad])

    def test_entry_without_timestamp_rejected(self):
        bad = ChatLogEntry(
            id="a", user_id="u1", doc_id="D1", question="q", answer=None, created_at=None,
        )
        with self.assertRaises(InvalidEntry):
            group_into_sessions([bad])

    def test_naive_entry_timestamp_read_as_utc(self):
        naive = ChatLogEntry(
            id="a", user_id="u1", doc_id="D1", question="q", answer="a",
            created_at=datetime(2025, 3, 1, 12, 0),
        )
        self.assertEqual(group_into_sessions([naive])[0].created_at, T0)


class ParseTimestampTests(SimpleTestCase):
    def test_iso_with_offset(self):
        self.assertEqual(parse_timestamp("2025-03-01T14:00:00+02:00"), T0)

    def test_naive_is_utc(self):
        self.assertEqual(parse_timestamp(datetime(2025, 3, 1, 12, 0)), T0)

    def test_epoch_seconds_and_millis(self):
        self.assertEqual(parse_timestamp(T0.timestamp()), T0)
        self.assertEqual(parse_timestamp(int(T0.timestamp() * 1000)), T0)

    def test_garbage(self):
        for value in (None, "", "nope", "2025-13-45T99:00:00", True, object()):
            self.assertEqual(parse_timestamp(value), EPOCH)


class GetSessionMessagesTests(SimpleTestCase):
    def test_explicit_session(self):
        pool = [
            marker("a", sid="S1", at=0, name="Deck.pptx", type_="pptx"),
            row("c", sid="S1", at=20),
            row("b", sid="S1", at=10),
            row("x", sid="S2", at=15),
        ]
        s = get_session_messages("S1", pool)
        self.assertEqual(s.anchor.id, "a")
        self.assertEqual([m.id for m in s.messages], ["b", "c"])
        self.assertEqual(s.doc_name, "Deck.pptx")
        self.assertEqual(s.doc_type, "pptx")

    def test_marker_preferred_as_anchor(self):
        pool = [row("b", sid="S1", at=-10), marker("a", sid="S1", at=0)]
        self.assertEqual(get_session_messages("S1", pool).anchor.id, "a")

    def test_legacy_key_uses_window_and_includes_anchor(self):
        pool = [
            row("anchor", at=0),
            row("near", at=3000),
            row("far", at=4000),
            row("other-doc", doc="D2", at=10),
            marker("m", at=20),
        ]
        s = get_session_messages("anchor", pool)
        self.assertEqual(s.session_key, "anchor")
        self.assertEqual([m.id for m in s.messages], ["anchor", "near"])

    def test_key_by_row_id_with_explicit_session(self):
        pool = [row("r1", sid="S1", at=0), row("r2", sid="S1", at=9000)]
        s = get_session_messages("r2", pool)
        self.assertEqual(s.session_key, "S1")
        self.assertEqual([m.id for m in s.messages], ["r1", "r2"])

    def test_unknown_key(self):
        with self.assertRaises(SessionNotFound):
            get_session_messages("nope", [row("a")])

    def test_blank_key(self):
        with self.assertRaises(SessionNotFound):
            get_session_messages("", [row("a")])

    def test_legacy_window_includes_rows_with_a_session_id(self):
        pool = [row("anchor", at=0), row("other", sid="S9", at=600)]
        s = get_session_messages("anchor", pool)
        self.assertEqual([m.id for m in s.messages], ["anchor", "other"])

    def test_malformed_pool_rejected(self):
        with self.assertRaises(InvalidEntry):
            get_session_messages("a", [row("a"), row("b", doc=None)])
        with self.assertRaises(InvalidEntry):
            get_session_messages("a", [row("a"), {"id": "b", "question": "q"}])

    def test_duplicate_ids_in_pool_rejected(self):
        with self.assertRaises(InvalidEntry):
            get_session_messages("a", [row("a"), row("a", at=5)])
