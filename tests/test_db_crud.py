import pytest
from werkzeug.security import generate_password_hash

from personal_pm import create_app
from personal_pm.db import db, UserDB, ProjectDB, TaskDB, SubTaskDB, SubTaskImageDB, ensure_admin_user


@pytest.fixture()
def app(tmp_path):
    app = create_app(testing=True, config={'IMAGE_CACHE_PATH': str(tmp_path / 'images.json')})
    with app.app_context():
        db.drop_all()
        db.create_all()
        yield app


def test_user_crud(app):
    u = UserDB(id='u1', username='tester', password_hash=generate_password_hash('Passw0rd!'), is_admin=False)
    db.session.add(u)
    db.session.commit()
    # Verify user exists via ORM
    assert UserDB.query.filter_by(username='tester').first() is not None
    # Update password
    u.password_hash = generate_password_hash('NewPassw0rd!')
    db.session.commit()
    updated = db.session.get(UserDB, 'u1')
    assert updated and updated.password_hash != ''
    # Delete user
    db.session.delete(updated)
    db.session.commit()
    assert db.session.get(UserDB, 'u1') is None


def test_generated_ids_are_unique(app):
    db.session.add(UserDB(id='u2', username='owner', password_hash='x'))
    p1 = ProjectDB(user_id='u2', name='A')
    p2 = ProjectDB(user_id='u2', name='B')
    db.session.add_all([p1, p2])
    db.session.commit()
    assert p1.id and p2.id and p1.id != p2.id
    assert p1.status == 'active'


def test_project_cascade_deletes_children(app):
    db.session.add(UserDB(id='u3', username='cascade', password_hash='x'))
    p = ProjectDB(user_id='u3', name='House')
    t = TaskDB(project=p, title='Roof', order=1)
    s = SubTaskDB(task=t, title='Gutters', order=1)
    img = SubTaskImageDB(subtask=s, filename='image-1.png', base64_data='AAAA', mime_type='image/png', order=1)
    db.session.add_all([p, t, s, img])
    db.session.commit()
    img_id = img.id
    assert [x.title for x in p.tasks] == ['Roof']
    assert [x.filename for x in s.images] == ['image-1.png']
    db.session.delete(p)
    db.session.commit()
    assert TaskDB.query.count() == 0
    assert SubTaskDB.query.count() == 0
    assert db.session.get(SubTaskImageDB, img_id) is None


def test_image_metadata_defers_payload(app):
    db.session.add(UserDB(id='u4', username='meta', password_hash='x'))
    p = ProjectDB(user_id='u4', name='P')
    s = SubTaskDB(task=TaskDB(project=p, title='T'), title='S')
    db.session.add_all([p, s, SubTaskImageDB(subtask=s, filename='image-1.gif', base64_data='R0lG', mime_type='image/gif', order=1)])
    db.session.commit()
    db.session.expunge_all()
    meta = SubTaskImageDB.query.first()
    assert meta.to_dict() == {'id': meta.id, 'filename': 'image-1.gif', 'mimeType': 'image/gif', 'order': 1}
    assert 'base64_data' not in meta.__dict__
    assert meta.base64_data == 'R0lG'


def test_ensure_admin_user_only_once(app):
    assert ensure_admin_user(db.session) is not None
    assert ensure_admin_user(db.session) is None
    assert UserDB.query.filter_by(is_admin=True).count() == 1
