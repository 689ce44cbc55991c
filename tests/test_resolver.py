import pytest

from conftest import FakeInventory, make_node
from erdma.cloud import Instance, InstanceType, NetworkInterface
from erdma.errors import ResolverError
from erdma.model import ERI
from erdma.resolver import EriResolver, convert_primary_eni, entitlement, select_eri_from_exist

RDMA = "HighPerformance"
NORMAL = "Normal"


def eni(eni_id, eni_type="Secondary", mode=RDMA, qp=0, mac="00:16:3e:00:00:00", card=0, tags=None, instance_id=""):
    return NetworkInterface(
        id=eni_id,
        type=eni_type,
        mac=mac,
        instance_id=instance_id,
        status="InUse",
        traffic_mode=mode,
        queue_pair_number=qp,
        card_index=card,
        tags=tags or {},
    )


SELECT_CASES = [
    (
        "primary already rdma with the full budget",
        [eni("eni-1", "Primary", RDMA, 8)],
        8, 1,
        [ERI("eni-1", True, "00:16:3e:00:00:00", "", 0, 8)], [], 0,
    ),
    (
        "secondary rdma interface covers the only card",
        [
            eni("eni-1", "Primary", NORMAL, 0),
            eni("eni-2", "Secondary", RDMA, 8, "00:16:3e:00:00:01"),
        ],
        8, 1,
        [ERI("eni-2", False, "00:16:3e:00:00:01", "", 0, 8)], [], 0,
    ),
    (
        "budget used up on card 1 leaves nothing to create",
        [
            eni("eni-1", "Primary", NORMAL, 0),
            eni("eni-2", "Secondary", RDMA, 8, "00:16:3e:00:00:01", card=1),
        ],
        8, 2,
        [ERI("eni-2", False, "00:16:3e:00:00:01", "", 1, 8)], [], 0,
    ),
    (
        "primary rdma on card 0 and a second card to create",
        [eni("eni-primary", "Primary", RDMA, 6)],
        8, 2,
        [ERI("eni-primary", True, "00:16:3e:00:00:00", "", 0, 6)], [1], 2,
    ),
    (
        "secondaries on both cards",
        [
            eni("eni-primary", "Primary", NORMAL, 0, "00:16:3e:00:00:03"),
            eni("eni-secondary1", "Secondary", RDMA, 6, "00:16:3e:00:00:00", card=1),
            eni("eni-secondary2", "Secondary", RDMA, 2, "00:16:3e:00:00:01", card=0),
        ],
        8, 2,
        [
            ERI("eni-secondary1", False, "00:16:3e:00:00:00", "", 1, 6),
            ERI("eni-secondary2", False, "00:16:3e:00:00:01", "", 0, 2),
        ],
        [], 0,
    ),
    (
        "first interface seen on a card wins",
        [
            eni("eni-primary", "Primary", NORMAL, 0, "00:16:3e:00:00:03"),
            eni("eni-secondary1", "Secondary", RDMA, 6, "00:16:3e:00:00:00", card=0),
            eni("eni-secondary2", "Secondary", RDMA, 2, "00:16:3e:00:00:01", card=0),
        ],
        8, 2,
        [ERI("eni-secondary1", False, "00:16:3e:00:00:00", "", 0, 6)], [], 0,
    ),
    (
        "remaining budget cannot be divided over the missing cards",
        [
            eni("eni-primary", "Primary", NORMAL, 0, "00:16:3e:00:00:03"),
            eni("eni-secondary1", "Secondary", RDMA, 6, "00:16:3e:00:00:00", card=1),
            eni("eni-secondary2", "Secondary", RDMA, 2, "00:16:3e:00:00:01", card=1),
        ],
        9, 3,
        [ERI("eni-secondary1", False, "00:16:3e:00:00:00", "", 1, 6)], [], 0,
    ),
    (
        "create on card 1",
        [eni("eni-1", "Secondary", RDMA, 2)],
        8, 2,
        [ERI("eni-1", False, "00:16:3e:00:00:00", "", 0, 2)], [1], 6,
    ),
    (
        "convert the primary for card 0",
        [
            eni("eni-1", "Secondary", RDMA, 2, card=1),
            eni("eni-2", "Primary", NORMAL, 0, "00:16:3e:00:00:01"),
        ],
        8, 2,
        [
            ERI("eni-1", False, "00:16:3e:00:00:00", "", 1, 2),
            ERI("eni-2", True, "00:16:3e:00:00:01", "", 0, 6),
        ],
        [], 6,
    ),
]


@pytest.mark.parametrize(
    "existing,budget,cards,expected_eris,expected_create,expected_per_card",
    [case[1:] for case in SELECT_CASES],
    ids=[case[0] for case in SELECT_CASES],
)
def test_select_eri_from_exist(existing, budget, cards, expected_eris, expected_create, expected_per_card):
    eris, need_create, per_card = select_eri_from_exist(existing, budget, cards, manage_non_owned=True)
    assert eris == expected_eris
    assert need_create == expected_create
    assert per_card == expected_per_card


def test_select_without_anchor_fails():
    with pytest.raises(ResolverError):
        select_eri_from_exist([], 8, 2, manage_non_owned=True)


def test_select_is_idempotent_for_the_same_snapshot():
    existing = [eni("eni-primary", "Primary", RDMA, 6)]
    assert select_eri_from_exist(existing, 8, 2, True) == select_eri_from_exist(existing, 8, 2, True)


def test_select_skips_interfaces_not_created_by_controller():
    existing = [
        eni("eni-foreign", "Secondary", RDMA, 4, card=0),
        eni("eni-primary", "Primary", NORMAL, 0, "00:16:3e:00:00:09"),
    ]
    eris, need_create, per_card = select_eri_from_exist(existing, 8, 1, manage_non_owned=False)
    assert [e.id for e in eris] == ["eni-primary"]
    assert need_create == []
    assert per_card == 4


def test_select_keeps_owned_interfaces():
    owned = {"creator": "alibabacloud-erdma-controller"}
    existing = [eni("eni-1", "Secondary", RDMA, 8, tags=owned)]
    eris, need_create, _ = select_eri_from_exist(existing, 8, 1)
    assert [e.id for e in eris] == ["eni-1"]
    assert need_create == []


def test_select_over_budget_creates_nothing():
    existing = [eni("eni-1", "Secondary", RDMA, 10)]
    eris, need_create, per_card = select_eri_from_exist(existing, 8, 2, True)
    assert [e.id for e in eris] == ["eni-1"]
    assert need_create == []
    assert per_card == 0


def test_entitlement():
    assert entitlement([InstanceType("ecs.g8a", eri_quantity=None)], "ecs.g8a") is None
    assert entitlement([InstanceType("ecs.g8a", eri_quantity=0, queue_pair_number=8)], "ecs.g8a") is None
    assert entitlement([InstanceType("ecs.g8a", eri_quantity=1, queue_pair_number=8)], "ecs.g8a") == (1, 8)
    assert entitlement(
        [InstanceType("ecs.g8a", eri_quantity=4, network_card_quantity=2, queue_pair_number=16)], "ecs.g8a"
    ) == (2, 16)
    assert entitlement(
        [InstanceType("ecs.gn8", eri_quantity=4, network_card_quantity=2, queue_pair_number=16, gpu_amount=8)],
        "ecs.gn8",
    ) == (2, 32)
    assert entitlement([], "ecs.g8a") is None


@pytest.fixture
def cloud():
    inv = FakeInventory(
        instances=[Instance("i-abc", "ecs.g8a")],
        instance_types=[InstanceType("ecs.g8a", eri_quantity=2, network_card_quantity=2, queue_pair_number=8)],
    )
    return inv


def test_resolve_primary_only_instance(cloud):
    cloud.instance_types = [InstanceType("ecs.g8a", eri_quantity=1, queue_pair_number=8)]
    cloud.enis = [eni("eni-primary", "Primary", RDMA, 8, instance_id="i-abc")]
    eris = EriResolver(cloud, manage_non_owned=True).select_eris("i-abc")
    assert eris == [ERI("eni-primary", True, "00:16:3e:00:00:00", "i-abc", 0, 8)]
    assert cloud.created == []


def test_resolve_creates_missing_card(cloud):
    cloud.enis = [eni("eni-primary", "Primary", RDMA, 6, instance_id="i-abc")]
    eris = EriResolver(cloud, manage_non_owned=True).select_eris("i-abc")
    assert [e.id for e in eris] == ["eni-primary", "eni-new-1"]
    assert eris[1].card_index == 1
    assert eris[1].queue_pair == 2
    assert cloud.created == [("i-abc", 1, 2)]


def test_resolve_reuses_tagged_leftover(cloud):
    leftover = eni(
        "eni-left",
        "Secondary",
        RDMA,
        0,
        "00:16:3e:00:00:07",
        tags={"creator": "alibabacloud-erdma-controller", "instance-id": "i-abc"},
    )
    leftover.status = "Available"
    cloud.enis = [eni("eni-primary", "Primary", RDMA, 6, instance_id="i-abc"), leftover]
    eris = EriResolver(cloud, manage_non_owned=True).select_eris("i-abc")
    assert [e.id for e in eris] == ["eni-primary", "eni-left"]
    assert eris[1].card_index == 1
    assert eris[1].instance_id == "i-abc"
    assert cloud.created == []


def test_resolve_unsupported_type(cloud):
    cloud.instance_types = [InstanceType("ecs.g8a", eri_quantity=0)]
    assert EriResolver(cloud).select_eris("i-abc") is None


def test_resolve_unknown_instance(cloud):
    with pytest.raises(ResolverError):
        EriResolver(cloud).select_eris("i-missing")


def test_instance_id_from_provider_id(cloud):
    assert EriResolver(cloud).instance_id_from_node(make_node()) == "i-abc"


def test_instance_id_falls_back_to_internal_ip(cloud):
    cloud.ip_index["192.168.0.10"] = [Instance("i-abc")]
    node = make_node(provider_id="")
    assert EriResolver(cloud).instance_id_from_node(node) == "i-abc"


def test_instance_id_ambiguous_ip(cloud):
    cloud.ip_index["192.168.0.10"] = [Instance("i-1"), Instance("i-2")]
    with pytest.raises(ResolverError):
        EriResolver(cloud).instance_id_from_node(make_node(provider_id="cn-hangzhou.i-gone"))


def test_convert_primary_eni(cloud):
    convert_primary_eni(cloud, "eni-primary", 8)
    assert cloud.converted == [("eni-primary", 8)]
