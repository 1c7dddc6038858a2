from datetime import date

from civicwatch.crawlers.events import (
    map_event_result,
    parse_event_detail,
    parse_event_listing,
    split_venue,
)
from civicwatch.crawlers.ideas import parse_idea_detail, parse_idea_listing, parse_voting
from civicwatch.crawlers.issues import parse_issue_detail, parse_issue_listing
from civicwatch.crawlers.parsing import (
    first_known,
    parse_german_date,
    parse_numeric_date,
    parse_time_range,
)

IDEA_LISTING = """
<div class="view-content">
  <article>
    <h3><a href="/node/1234">Mehr Bäume in der Innenstadt</a></h3>
    <div class="meta">Gespeichert von anna_b am Mo., 03.02.2025 - 14:22</div>
    <div class="field">Stadtgrün und Umwelt</div>
    <p>Die Innenstadt braucht mehr Schatten.</p>
    <div class="status">Laufend</div>
    <div>12 von 50 Unterstützern</div>
    <span>3 Kommentare</span>
  </article>
  <article><div>Teaser ohne Link</div></article>
</div>
"""

IDEA_DETAIL = """
<html><body>
<article>
  <h1>Mehr Bäume in der Innenstadt</h1>
  <div class="field--name-body"><p>Erster Absatz.</p><p>Zweiter Absatz.</p></div>
  <div>Abstimmung möglich bis zum 31.12.2099</div>
  <ul class="supporters-list"><li>anna_b</li><li>karl</li></ul>
</article>
<article><div class="meta-information"><span>stadt_bs</span> Moderator</div><p>Danke für die Idee!</p></article>
<article><div class="meta-information"><span>karl</span></div><p>Gute Idee.</p></article>
</body></html>
"""

ISSUE_LISTING = """
<article>
  <h3><a href="/node/555">Laterne flackert</a></h3>
  <div>Gespeichert von hans am Di., 04.02.2025 - 09:10</div>
  <div>Straßenbeleuchtung / Laterne defekt</div>
  <div>Am Wendentor 3, 38100 Braunschweig</div>
  <div>in Bearbeitung</div>
</article>
<article>
  <h3><a href="/node/556">Müll am Spielplatz</a></h3>
</article>
"""

ISSUE_DETAIL = """
<html><body>
<article>
  <h1>Laterne flackert</h1>
  <time datetime="2025-02-04T09:10:00+01:00">04.02.2025</time>
  <div>Gespeichert von hans am Di., 04.02.2025 - 09:10</div>
  <div class="field--field_upload"><img src="/icons/marker-icon.png"><img src="/sites/default/files/laterne.jpg"></div>
  <p>Die Laterne vor Hausnummer 3 flackert seit Tagen.</p>
  <div>Am Wendentor 3, 38100 Braunschweig</div>
  <div>Straßenbeleuchtung / Laterne defekt</div>
</article>
<section>
  <h1>Bearbeitungshistorie</h1>
  <ul>
    <li><p>10.02.2025 - 08:00</p><h2>Status</h2><p>Erledigt / beauftragt</p></li>
    <li><p>05.02.2025 - 12:00</p><h2>Status</h2><p>in Bearbeitung</p></li>
  </ul>
</section>
</body></html>
"""

EVENT_LISTING = """
<div>
  <a href="/veranstaltungen-detailseite/event/9876/sommerfest">Sommerfest im Park</a>
  <a href="/veranstaltungen-detailseite/event/9876/sommerfest"><img alt="Sommerfest"></a>
  <a href="https://braunschweig.die-region.de/veranstaltungen-detailseite/event/5555/lesung/"><img alt="Lesung am Abend"></a>
  <a href="/andere-seite">Andere</a>
</div>
"""

EVENT_DETAIL = """
<html><body>
  <h1>Sommerfest im Park</h1>
  <div class="event-date">Samstag, 18. Oktober 2025, 18:00 - 22:00 Uhr</div>
  <div class="event-description">Ein buntes Fest mit Musik und Essen für die ganze Familie.</div>
  <div class="event-location">Bürgerpark, Theodor-Heuss-Straße 1, 38122, Braunschweig</div>
  <div class="event-price">Eintritt frei</div>
  <article><img src="/media/fest.jpg"></article>
</body></html>
"""


# ── shared helpers ────────────────────────────────────────────────────────────

def test_german_date_with_and_without_year():
    assert parse_german_date("18. Oktober 2025") == "2025-10-18"
    assert parse_german_date("Sa, 1. März", today=date(2026, 5, 1)) == "2026-03-01"
    assert parse_german_date("irgendwann") is None
    assert parse_german_date(None) is None


def test_numeric_date_and_time_range():
    assert parse_numeric_date("bis zum 1.2.2026") == "2026-02-01"
    assert parse_time_range("18:00 - 22:00") == ("18:00", "22:00")
    assert parse_time_range("ab 9:05 Uhr") == ("09:05", None)
    assert parse_time_range("ganztägig") == (None, None)


def test_first_known_respects_priority_order():
    text = "Status: Keine Zuständigkeit der Stadtverwaltung"
    assert first_known(text, ("Keine Zuständigkeit der Stadtverwaltung", "Keine")) == (
        "Keine Zuständigkeit der Stadtverwaltung"
    )
    assert first_known("nichts", ("A", "B"), "Offen") == "Offen"


# ── ideas ─────────────────────────────────────────────────────────────────────

def test_idea_listing_rows():
    [row] = parse_idea_listing(IDEA_LISTING)
    assert row["external_id"] == "1234"
    assert row["title"] == "Mehr Bäume in der Innenstadt"
    assert row["url"] == "https://mitreden.braunschweig.de/node/1234"
    assert row["author"] == "anna_b"
    assert row["submitted_at"] == "Mo., 03.02.2025 - 14:22"
    assert row["category"] == "Stadtgrün und Umwelt"
    assert row["status"] == "Laufend"
    assert (row["supporters"], row["max_supporters"], row["comments"]) == (12, 50, 3)
    assert row["description"] == "Die Innenstadt braucht mehr Schatten."


def test_idea_without_status_gets_default():
    html = '<article><h3><a href="/node/1">Titel</a></h3></article>'
    [row] = parse_idea_listing(html)
    assert row["status"] == "In Prüfung"
    assert row["supporters"] == 0


def test_idea_detail_fields():
    fields = parse_idea_detail(IDEA_DETAIL, "https://mitreden.braunschweig.de/node/1234")
    assert fields["title"] == "Mehr Bäume in der Innenstadt"
    assert fields["description"] == "Erster Absatz.\n\nZweiter Absatz."
    assert fields["supporters_list"] == ["anna_b", "karl"]
    assert fields["voting_deadline"] == "2099-12-31"
    assert fields["voting_expired"] is False
    assert fields["comments"] == 2
    moderator, citizen = fields["comments_data"]
    assert moderator == {"author": "stadt_bs", "is_moderator": True, "text": "Danke für die Idee!"}
    assert citizen["is_moderator"] is False


def test_voting_deadline_states():
    assert parse_voting("bis zum 01.01.2020", today=date(2025, 1, 1)) == ("2020-01-01", True)
    assert parse_voting("Zeitraum für Stimmabgabe überschritten") == (None, True)
    assert parse_voting("keine Abstimmung") == (None, False)


# ── issues ────────────────────────────────────────────────────────────────────

def test_issue_listing_rows():
    first, second = parse_issue_listing(ISSUE_LISTING)
    assert first["external_id"] == "555"
    assert first["location"] == "Am Wendentor 3, 38100 Braunschweig"
    assert first["category"] == "Straßenbeleuchtung / Laterne defekt"
    assert first["status"] == "in Bearbeitung"
    assert first["author"] == "hans"
    assert second["status"] == "Offen"
    assert second["location"] is None


def test_issue_detail_latest_history_entry_wins():
    fields = parse_issue_detail(ISSUE_DETAIL, "https://mitreden.braunschweig.de/node/555")
    assert fields["title"] == "Laterne flackert"
    assert fields["submitted_at"] == "2025-02-04T09:10:00+01:00"
    assert fields["status"] == "Erledigt / beauftragt"
    assert fields["status_history"] == [
        {"timestamp": "10.02.2025 - 08:00", "status": "Erledigt / beauftragt"},
        {"timestamp": "05.02.2025 - 12:00", "status": "in Bearbeitung"},
    ]
    assert fields["photo_url"] == "https://mitreden.braunschweig.de/sites/default/files/laterne.jpg"
    assert fields["location"] == "Am Wendentor 3, 38100 Braunschweig"
    assert fields["description"] == "Die Laterne vor Hausnummer 3 flackert seit Tagen."


# ── events ────────────────────────────────────────────────────────────────────

def test_event_listing_dedupes_and_falls_back_to_alt_text():
    rows = parse_event_listing(EVENT_LISTING)
    assert [(r["external_id"], r["title"]) for r in rows] == [
        ("9876", "Sommerfest im Park"),
        ("5555", "Lesung am Abend"),
    ]
    assert rows[0]["url"] == (
        "https://braunschweig.die-region.de/veranstaltungen-detailseite/event/9876/sommerfest"
    )


def test_event_detail_selector_fallback():
    url = "https://braunschweig.die-region.de/veranstaltungen-detailseite/event/9876/sommerfest/"
    fields = parse_event_detail(EVENT_DETAIL, url)
    assert fields["external_id"] == "9876"
    assert fields["start_date"] == "2025-10-18"
    assert (fields["start_time"], fields["end_time"]) == ("18:00", "22:00")
    assert fields["venue_name"] == "Bürgerpark"
    assert fields["venue_address"] == "Theodor-Heuss-Straße 1"
    assert fields["venue_postcode"] == "38122"
    assert fields["venue_city"] == "Braunschweig"
    assert fields["is_free"] is True
    assert fields["image_url"] == "https://braunschweig.die-region.de/media/fest.jpg"


def test_event_detail_without_heading_yields_nothing():
    assert parse_event_detail("<html><body><p>leer</p></body></html>", "https://x/event/1/") is None


def test_split_venue_defaults_city():
    assert split_venue("Staatstheater") == {
        "venue_name": "Staatstheater",
        "venue_address": None,
        "venue_postcode": None,
        "venue_city": "Braunschweig",
    }


def test_map_text_service_result():
    fields = map_event_result(
        {
            "title": "Jazz im LOT",
            "dates": [
                {"date": "5. März 2026", "time": "19:30 - 22:00"},
                {"date": "6. März 2026", "time": "19:30"},
                {"date": "unbekannt"},
            ],
            "location": {"name": "LOT-Theater", "postal_code": "38100"},
            "organizer": {"name": "Jazzfreunde"},
            "price_info": "kostenlos",
            "is_free": False,
            "image_urls": ["https://img.example/jazz.jpg"],
        },
        "https://braunschweig.die-region.de/veranstaltungen-detailseite/event/1/jazz/",
    )
    assert fields["start_date"] == "2026-03-05"
    assert fields["end_date"] == "2026-03-06"
    assert (fields["start_time"], fields["end_time"]) == ("19:30", "22:00")
    assert len(fields["dates"]) == 2
    assert fields["venue_city"] == "Braunschweig"
    assert fields["organizer"] == "Jazzfreunde"
    assert fields["is_free"] is True
    assert fields["image_url"] == "https://img.example/jazz.jpg"
