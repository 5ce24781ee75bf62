import json
import os

os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402

from collector.config import Settings  # noqa: E402
from collector.models import Source, new_id  # noqa: E402
from collector.ratelimit import RateLimitRegistry  # noqa: E402
from collector.store import Store  # noqa: E402


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        app_env="test",
        db_path=str(tmp_path / "collector.db"),
        max_comment_depth=5,
        reddit_delay_ms=0,
        hackernews_delay_ms=0,
        semantic_scholar_delay_ms=0,
        http_backoff_seconds=0,
        http_max_attempts=3,
    )


@pytest.fixture
def store(test_settings):
    s = Store(test_settings.db_path)
    s.init_schema()
    yield s
    s.close()


@pytest.fixture
def registry(test_settings) -> RateLimitRegistry:
    return RateLimitRegistry.from_settings(test_settings)


@pytest.fixture
def make_source():
    def _make(source_type: str, config: dict, external_id: str | None = None, **fields) -> Source:
        return Source(
            id=new_id(),
            type=source_type,
            config=json.dumps(config),
            external_id=external_id or new_id(),
            **fields,
        )

    return _make


def _comment_row(comment_id: str, depth: int, author: str, text: str, indent_attr: bool = False) -> str:
    if indent_attr:
        indent = f'<td class="ind" indent="{depth}"></td>'
    else:
        indent = f'<td class="ind"><img src="s.gif" height="1" width="{depth * 40}"></td>'
    return f"""
    <tr class="athing comtr" id="{comment_id}"><td><table border="0"><tr>
      {indent}
      <td valign="top" class="votelinks"><a id="up_{comment_id}" href="vote?id={comment_id}"></a></td>
      <td class="default">
        <div style="margin-top:2px; margin-bottom:-10px;"><span class="comhead">
          <a href="user?id={author}" class="hnuser">{author}</a>
          <span class="age" title="2025-11-22T21:50:13 1763848213"><a href="item?id={comment_id}">1 hour ago</a></span>
        </span></div>
        <br><div class="comment">
          <div class="commtext c00">{text}<div class="reply"><p><font size="1"><u><a href="reply?id={comment_id}">reply</a></u></font></p></div></div>
        </div>
      </td>
    </tr></table></td></tr>"""


@pytest.fixture
def hn_item_page():
    """Render a minimal news.ycombinator.com item page.

    `comments` is a list of (id, depth, author, text) tuples in document order.
    """

    def _render(
        story_id: int,
        comments: list[tuple[str, int, str, str]],
        more_link: bool = False,
        comment_form: bool = True,
        indent_attr: bool = False,
    ) -> str:
        rows = "".join(_comment_row(*c, indent_attr=indent_attr) for c in comments)
        form = (
            f'<form action="comment" method="post"><input type="hidden" name="parent" value="{story_id}">'
            '<textarea name="text" rows="8" cols="80"></textarea><br><input type="submit" value="add comment"></form>'
            if comment_form
            else ""
        )
        more = f'<a href="item?id={story_id}&amp;p=2" class="morelink" rel="next">More</a>' if more_link else ""
        return f"""<html lang="en"><head><title>Story | Hacker News</title></head><body>
        <center><table id="hnmain"><tr><td>
          <table class="fatitem" border="0">
            <tr class="athing submission" id="{story_id}">
              <td class="title"><span class="titleline"><a href="https://example.com/story">Story</a></span></td>
            </tr>
            <tr><td class="subtext">12 points</td></tr>
            <tr><td>{form}</td></tr>
          </table>
          <table border="0" class="comment-tree">{rows}</table>
          {more}
        </td></tr></table></center></body></html>"""

    return _render
