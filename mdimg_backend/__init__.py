"""Backend for the Markdown answer-image bot.

Route handlers in server.py stay thin; the work happens here:
- Markdown to styled HTML (mixed CJK/Latin layout, untrusted input)
- HTML to PNG through an out-of-process renderer
- per-owner session directories and the idle-expiry janitor

Security note:
Session ids are unguessable UUID4 strings and double as directory names, so
they are validated strictly before touching a path. The id is a capability:
whoever holds it can fetch the session's images from /s/<id>/images/. Listing,
detail, touch, delete and continuing a session are restricted to the owner
recorded in its user_id.txt.
"""
