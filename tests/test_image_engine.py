import re

import pytest
from werkzeug.security import generate_password_hash

from personal_pm import create_app
from personal_pm.db import db, UserDB, ProjectDB, TaskDB, SubTaskDB, SubTaskImageDB
from personal_pm.image_cache import get_image_cache
from personal_pm.image_engine import (
    ImageValidationError, find_embedded_images, image_filename, extract_and_register,
    register_images, resolve_for_display, strip_marked_payloads, delete_images, forget_images, next_image_order,
    image_ids_for_subtasks, image_ids_for_tasks, image_ids_for_projects,
)

PNG = 'iVBORw0KGgoAAAANSUhEUg=='
GIF = 'R0lGODlhAQABAAAAACw='
JPEG = '/9j/4AAQSkZJRgABAQ=='

IDS = re.compile(r'data-image-id="([^"]+)"')


@pytest.fixture()
def app(tmp_path):
    app = create_app(testing=True, config={'IMAGE_CACHE_PATH': str(tmp_path / 'cache' / 'images.json')})
    with app.app_context():
        yield app


@pytest.fixture()
def subtask(app):
    u = UserDB(id='u1', username='owner', password_hash=generate_password_hash('OwnerPass1!'))
    p = ProjectDB(user_id='u1', name='Home')
    t = TaskDB(project=p, title='Kitchen')
    s = SubTaskDB(task=t, title='Tiles')
    db.session.add_all([u, p, t, s])
    db.session.commit()
    return s


def _persist(html, subtask, **kw):
    result = extract_and_register(html, subtask.id, **kw)
    subtask.description = result.rewritten_html
    db.session.commit()
    register_images(result.created_images)
    return result


def test_find_embedded_images_in_document_order():
    html = (f'<p><img src="data:image/png;base64,{PNG}"></p>'
            f'<img alt="x" src=\'data:image/gif;base64,{GIF}\' />'
            f'<img data-image-id="old" src="data:image/png;base64,{PNG}">'
            '<img src="https://example.com/a.png">')
    found = find_embedded_images(html)
    assert [(f.mime_type, f.base64_data) for f in found] == [('image/png', PNG), ('image/gif', GIF)]
    assert html[found[0].start:found[0].end] == found[0].tag


def test_find_ignores_data_src_attribute():
    html = f'<img data-src="data:image/png;base64,{PNG}" src="/static/x.png">'
    assert find_embedded_images(html) == []


def test_find_handles_angle_bracket_inside_attribute():
    html = f'<p><img alt="a>b" title=\'c>d\' src="data:image/png;base64,{PNG}"></p>'
    found = find_embedded_images(html)
    assert [(f.mime_type, f.base64_data) for f in found] == [('image/png', PNG)]
    assert found[0].tag.startswith('<img alt="a>b"')
    assert html[found[0].end:] == '</p>'


def test_strip_marked_payloads_only_touches_marked_data_urls():
    html = (f'<img data-image-id="a1" src="data:image/png;base64,{PNG}">'
            '<img data-image-id="a2" src="/static/logo.png">'
            f'<img src="data:image/gif;base64,{GIF}">')
    assert strip_marked_payloads(html) == (
        '<img data-image-id="a1" src="">'
        '<img data-image-id="a2" src="/static/logo.png">'
        f'<img src="data:image/gif;base64,{GIF}">')


def test_image_filename_uses_mime_subtype():
    assert image_filename(1, 'image/png') == 'image-1.png'
    assert image_filename(2, 'image/jpeg') == 'image-2.jpeg'
    assert image_filename(3, 'image/svg+xml') == 'image-3.svg'
    assert image_filename(4, 'image') == 'image-4.png'


def test_single_image_scenario(app, subtask):
    html = '<p>See <img src="data:image/png;base64,AAAA"/></p>'
    result = _persist(html, subtask)
    assert len(result.created_images) == 1
    img = result.created_images[0]
    assert img.mime_type == 'image/png'
    assert img.filename == 'image-1.png'
    assert img.order == 1
    assert f'<img data-image-id="{img.id}" src="data:image/png;base64,AAAA"/>' in result.rewritten_html
    assert get_image_cache().get(img.id).base64_data == 'AAAA'


def test_multiple_images_keep_left_to_right_order(app, subtask):
    html = (f'<p>a <img src="data:image/png;base64,{PNG}"></p>'
            f'<p>b <img src="data:image/gif;base64,{GIF}"></p>'
            f'<p>c <img src="data:image/jpeg;base64,{JPEG}"></p>')
    result = _persist(html, subtask)
    created = result.created_images
    assert [i.order for i in created] == [1, 2, 3]
    assert [i.filename for i in created] == ['image-1.png', 'image-2.gif', 'image-3.jpeg']
    assert IDS.findall(result.rewritten_html) == [i.id for i in created]
    assert len(set(i.id for i in created)) == 3
    # each id lands on the tag holding its own payload
    for img in created:
        assert re.search(rf'data-image-id="{img.id}" src="data:{img.mime_type};base64,{re.escape(img.base64_data)}"',
                         result.rewritten_html)


def test_no_images_skips_extraction(app, subtask):
    html = '<p>plain text</p>'
    result = extract_and_register(html, subtask.id)
    assert result.rewritten_html == html
    assert result.created_images == []
    assert SubTaskImageDB.query.count() == 0


def test_unsupported_mime_type_rejects_whole_write(app, subtask):
    html = (f'<img src="data:image/png;base64,{PNG}">'
            f'<img src="data:image/tiff;base64,{PNG}">')
    with pytest.raises(ImageValidationError):
        extract_and_register(html, subtask.id)
    db.session.rollback()
    assert SubTaskImageDB.query.count() == 0
    assert get_image_cache().stats()['count'] == 0


def test_oversized_image_rejected(app, subtask):
    big = 'A' * (5 * 1024 * 1024 * 4 // 3 + 4)
    with pytest.raises(ImageValidationError):
        extract_and_register(f'<img src="data:image/png;base64,{big}">', subtask.id)
    assert SubTaskImageDB.query.count() == 0


def test_resolve_reconstructs_original_payloads(app, subtask):
    html = (f'<p><img class="wide" src="data:image/png;base64,{PNG}"></p>'
            f'<p><img src="data:image/gif;base64,{GIF}" width="10"></p>')
    _persist(html, subtask)
    get_image_cache().clear()
    metas = SubTaskImageDB.query.filter_by(subtask_id=subtask.id).order_by(SubTaskImageDB.order).all()
    display = resolve_for_display(subtask.description, metas)
    srcs = re.findall(r'src="([^"]+)"', display)
    assert srcs == [f'data:image/png;base64,{PNG}', f'data:image/gif;base64,{GIF}']
    assert 'class="wide"' in display and 'width="10"' in display


def test_resolve_with_stripped_payload(app, subtask):
    html = f'<p><img src="data:image/png;base64,{PNG}"></p>'
    result = _persist(html, subtask, strip_payload=True)
    assert PNG not in result.rewritten_html
    assert 'src=""' in result.rewritten_html
    display = resolve_for_display(result.rewritten_html, result.created_images)
    assert f'src="data:image/png;base64,{PNG}"' in display


def test_extract_with_quoted_angle_bracket(app, subtask):
    result = _persist(f'<img alt="1 > 0" src="data:image/png;base64,{PNG}">', subtask)
    img = result.created_images[0]
    assert result.rewritten_html == f'<img data-image-id="{img.id}" alt="1 > 0" src="data:image/png;base64,{PNG}">'


def test_strip_applies_to_previously_marked_tags(app, subtask):
    first = _persist(f'<img src="data:image/png;base64,{PNG}">', subtask, strip_payload=True)
    img_id = first.created_images[0].id
    # what a client sends back after editing the resolved description
    shown = resolve_for_display(subtask.description, first.created_images)
    assert PNG in shown
    again = extract_and_register(shown + '<p>edited</p>', subtask.id, strip_payload=True)
    assert again.created_images == []
    assert again.rewritten_html == f'<img data-image-id="{img_id}" src=""><p>edited</p>'


def test_resolve_inserts_missing_src(app, subtask):
    result = _persist(f'<img src="data:image/png;base64,{PNG}">', subtask)
    img = result.created_images[0]
    html = f'<p><img data-image-id="{img.id}" alt="x"></p>'
    display = resolve_for_display(html, [{'id': img.id}])
    assert f'src="data:image/png;base64,{PNG}"' in display
    assert 'alt="x"' in display


def test_resolve_cache_miss_repopulates_cache(app, subtask):
    result = _persist(f'<img src="data:image/png;base64,{PNG}">', subtask)
    img_id = result.created_images[0].id
    cache = get_image_cache()
    cache.clear()
    assert cache.get(img_id) is None
    resolve_for_display(subtask.description, [{'id': img_id}])
    assert cache.get(img_id).base64_data == PNG


def test_resolve_without_images_passes_through(app):
    html = '<p><img data-image-id="abc" src=""></p>'
    assert resolve_for_display(html, []) is html
    assert resolve_for_display(None, [{'id': 'abc'}]) is None


def test_unresolved_reference_leaves_tag(app, subtask):
    result = _persist(f'<img src="data:image/png;base64,{PNG}"><img src="data:image/gif;base64,{GIF}">',
                      subtask)
    gone, kept = result.created_images
    gone_id, kept_id = gone.id, kept.id
    delete_images([gone_id])
    db.session.commit()
    forget_images([gone_id])
    html = f'<img data-image-id="{gone_id}" src=""><img data-image-id="{kept_id}" src="">'
    display = resolve_for_display(html, [{'id': gone_id}, {'id': kept_id}])
    assert f'<img data-image-id="{gone_id}" src="">' in display
    assert f'<img data-image-id="{kept_id}" src="data:image/gif;base64,{GIF}">' in display


def test_reextraction_skips_marked_tags(app, subtask):
    first = _persist(f'<img src="data:image/png;base64,{PNG}">', subtask)
    html = subtask.description + f'<img src="data:image/gif;base64,{GIF}">'
    second = extract_and_register(html, subtask.id, start_order=next_image_order(subtask.id))
    assert len(second.created_images) == 1
    assert second.created_images[0].order == 2
    assert second.created_images[0].filename == 'image-2.gif'
    assert IDS.findall(second.rewritten_html) == [first.created_images[0].id, second.created_images[0].id]


def test_delete_images_scoped_to_subtask(app, subtask):
    result = _persist(f'<img src="data:image/png;base64,{PNG}">', subtask)
    img_id = result.created_images[0].id
    assert delete_images([img_id], subtask_id='someone-else') == []
    assert delete_images([img_id], subtask_id=subtask.id) == [img_id]
    db.session.commit()
    assert db.session.get(SubTaskImageDB, img_id) is None


def test_image_id_lookups_follow_ownership_chain(app, subtask):
    result = _persist(f'<img src="data:image/png;base64,{PNG}"><img src="data:image/png;base64,{PNG}">',
                      subtask)
    ids = sorted(i.id for i in result.created_images)
    assert sorted(image_ids_for_subtasks([subtask.id])) == ids
    assert sorted(image_ids_for_tasks([subtask.task_id])) == ids
    assert sorted(image_ids_for_projects([subtask.task.project_id])) == ids
    assert image_ids_for_projects([]) == []
    assert forget_images(ids) == 2
    assert get_image_cache().stats()['count'] == 0
