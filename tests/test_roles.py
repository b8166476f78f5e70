from silent_auction.roles import (BIDDER, SCHOOL_ADMIN, SITE_ADMIN, STUDENT, TEACHER, can_access_role,
                                  can_approve_artwork, can_edit_auction, can_view_artwork, can_view_auction,
                                  has_permission, sanitize_response_by_role)


def user(role, user_id=10, school_id=1):
    return {'id': user_id, 'role': role, 'school_id': school_id}


def auction(status='LIVE', visibility='PUBLIC', school_id=1, owner=20):
    return {'id': 1, 'auction_status': status, 'visibility': visibility, 'school_id': school_id,
            'created_by_user_id': owner}


def test_role_hierarchy():
    assert can_access_role(SITE_ADMIN, BIDDER)
    assert can_access_role(TEACHER, TEACHER)
    assert not can_access_role(STUDENT, TEACHER)
    assert not can_access_role('JANITOR', BIDDER)


def test_permissions():
    assert has_permission(STUDENT, 'bids:create')
    assert has_permission(BIDDER, 'bids:create')
    assert not has_permission(TEACHER, 'bids:create')
    assert has_permission(SITE_ADMIN, 'users:change_role')
    assert not has_permission(SCHOOL_ADMIN, 'users:change_role')


def test_anonymous_sees_only_public_live_auctions():
    assert can_view_auction(None, auction())
    assert not can_view_auction(None, auction(visibility='SCHOOL_ONLY'))
    assert not can_view_auction(None, auction(status='DRAFT'))


def test_school_only_auction_visible_to_same_school():
    assert can_view_auction(user(STUDENT, school_id=1), auction(visibility='SCHOOL_ONLY'))
    assert not can_view_auction(user(STUDENT, school_id=2), auction(visibility='SCHOOL_ONLY'))


def test_draft_visible_to_owner_and_admins_only():
    draft = auction(status='DRAFT', school_id=3)
    assert can_view_auction(user(TEACHER, user_id=20, school_id=9), draft)
    assert can_view_auction(user(SITE_ADMIN, school_id=None), draft)
    assert can_view_auction(user(SCHOOL_ADMIN, school_id=3), draft)
    assert not can_view_auction(user(SCHOOL_ADMIN, school_id=4), draft)
    assert not can_view_auction(user(STUDENT, school_id=3), draft)


def test_edit_rules():
    a = auction(school_id=1, owner=20)
    assert can_edit_auction(user(TEACHER, user_id=20), a)
    assert not can_edit_auction(user(TEACHER, user_id=21), a)
    assert can_edit_auction(user(SCHOOL_ADMIN, school_id=1), a)
    assert not can_edit_auction(user(SCHOOL_ADMIN, school_id=2), a)
    assert not can_edit_auction(user(STUDENT), a)


def test_artwork_visibility_and_approval():
    a = auction(owner=20)
    pending = {'id': 5, 'artwork_status': 'PENDING_APPROVAL', 'created_by_user_id': 30}
    approved = dict(pending, artwork_status='APPROVED')
    assert can_view_artwork(user(BIDDER, user_id=99, school_id=None), approved, a)
    assert not can_view_artwork(user(BIDDER, user_id=99, school_id=None), pending, a)
    assert can_view_artwork(user(STUDENT, user_id=30), pending, a)
    assert can_approve_artwork(user(TEACHER, user_id=20), pending, a)
    assert not can_approve_artwork(user(STUDENT, user_id=30), pending, a)


def test_sanitize_hides_reserve_from_bidders():
    record = {'id': 1, 'title': 'Sunset', 'reserve_bid_amount': 100, 'created_by_user_id': 20}
    assert 'reserve_bid_amount' not in sanitize_response_by_role(record, user(BIDDER))
    assert 'reserve_bid_amount' not in sanitize_response_by_role(record, None)
    assert sanitize_response_by_role(record, user(TEACHER))['reserve_bid_amount'] == 100
    assert sanitize_response_by_role(None, user(TEACHER)) is None
