from unittest.mock import MagicMock, patch

import httpx
import pytest

from database import create_document, db, find_by_id
from services.blockchain import (
    BlockchainError,
    BlockchainService,
    blockchain,
    content_type_number,
    tier_index,
    to_basis_points,
)
from settings import Settings

pytestmark = pytest.mark.api

WALLET = "0x" + "ab" * 20


@pytest.fixture
def chain():
    """Stub every contract call on the shared blockchain service."""
    with patch.multiple(
        blockchain,
        default_recipient=MagicMock(return_value=WALLET),
        upload_json_to_ipfs=MagicMock(return_value="ipfs://QmMeta"),
        mint_nft=MagicMock(return_value=("7", "0xmint")),
        list_nft=MagicMock(return_value="0xlist"),
        buy_nft=MagicMock(return_value="0xbuy"),
        start_auction=MagicMock(return_value="0xauction"),
        place_bid=MagicMock(return_value="0xbid"),
        mint_membership=MagicMock(return_value=("42", "0xmember")),
        upgrade_membership=MagicMock(return_value="0xupgrade"),
        tier_requirements=MagicMock(return_value={"BRONZE": 0, "SILVER": 100, "GOLD": 500, "PLATINUM": 1000}),
        set_royalty_splits=MagicMock(return_value="0xsplits"),
        get_royalty_splits=MagicMock(return_value=[{"recipient": WALLET, "percentage": 10.0}]),
        calculate_royalty=MagicMock(return_value={"recipients": [WALLET], "amounts": ["0.1"]}),
        claim_royalties=MagicMock(return_value="0xclaim"),
        record_streaming_royalty=MagicMock(return_value="0xstream"),
        claim_streaming_royalties=MagicMock(return_value="0xstreamclaim"),
        get_streaming_royalty=MagicMock(return_value={
            "total_streams": 1200, "total_earnings": "0.5", "last_claim_time": 0, "claimable_amount": "0.5",
        }),
    ):
        yield blockchain


@pytest.fixture
def nft(client, artist, chain):
    _, headers = artist
    res = client.post("/api/nfts/mint", headers=headers, json={
        "name": "First Pressing", "image": "ipfs://QmArt", "royalty_percentage": 10, "tags": ["vinyl"],
    })
    assert res.status_code == 200, res.text
    return res.json()["nft"]


class TestHelpers:
    def test_conversions(self):
        assert to_basis_points(2.5) == 250
        assert content_type_number("Artwork") == 4
        assert content_type_number(None) == 0
        assert tier_index("gold") == 2
        assert tier_index("unknown") == 0

    def test_unconfigured_contract(self):
        service = BlockchainService(Settings(private_key=None, nft_contract_address=None))
        with pytest.raises(BlockchainError) as exc:
            service.list_nft("1", 1.0)
        assert exc.value.configured is False

    def test_ipfs_upload(self):
        response = MagicMock()
        response.json.return_value = {"Hash": "QmHash"}
        with patch("services.blockchain.httpx.post", return_value=response) as post:
            uri = BlockchainService(Settings()).upload_json_to_ipfs({"name": "x"})
        assert uri == "ipfs://QmHash"
        assert post.call_args.args[0].endswith("/api/v0/add")

    def test_ipfs_failure(self):
        with patch("services.blockchain.httpx.post", side_effect=httpx.ConnectError("down")):
            with pytest.raises(BlockchainError, match="IPFS upload failed"):
                BlockchainService(Settings()).upload_json_to_ipfs({})


class TestNFTs:
    def test_mint(self, nft, chain, artist):
        user, _ = artist
        assert nft["token_id"] == "7"
        assert nft["owner_id"] == nft["creator_id"] == str(user["_id"])
        assert nft["metadata_uri"] == "ipfs://QmMeta"
        traits = {a["trait_type"]: a["value"] for a in nft["metadata"]["attributes"]}
        assert traits["Creator"] == user["name"]
        assert traits["Tag"] == "vinyl"
        args = chain.mint_nft.call_args.args
        assert args[0] == WALLET
        assert args[3:5] == (1000, 250)
        assert db["analyticsevent"].count_documents({"action": "nft_mint"}) == 1

    def test_mint_rejects_unknown_content_type(self, client, artist, chain):
        _, headers = artist
        res = client.post("/api/nfts/mint", headers=headers,
                          json={"name": "x", "image": "y", "content_type": "hologram"})
        assert res.status_code == 400

    def test_list_and_buy(self, client, nft, fan, artist, chain):
        _, artist_headers = artist
        buyer, headers = fan
        assert client.post(f"/api/nfts/{nft['id']}/buy", headers=headers).json()["message"] == "NFT not listed for sale"

        client.post(f"/api/nfts/{nft['id']}/list", json={"price": 0.5}, headers=artist_headers)
        listings = client.get("/api/nfts/marketplace/listings").json()["nfts"]
        assert [n["id"] for n in listings] == [nft["id"]]

        res = client.post(f"/api/nfts/{nft['id']}/buy", headers=headers).json()
        assert res["new_balance"] == 1
        chain.buy_nft.assert_called_once_with("7", 0.5)
        stored = find_by_id("nft", nft["id"])
        assert stored["owner_id"] == str(buyer["_id"])
        assert stored["is_listed"] is False
        assert db["nfttransaction"].find_one()["transaction_type"] == "purchase"

    def test_cannot_buy_own(self, client, nft, artist, chain):
        _, headers = artist
        client.post(f"/api/nfts/{nft['id']}/list", json={"price": 1}, headers=headers)
        assert client.post(f"/api/nfts/{nft['id']}/buy", headers=headers).json()["message"] == "You already own this NFT"

    def test_only_owner_lists(self, client, nft, fan, chain):
        _, headers = fan
        assert client.post(f"/api/nfts/{nft['id']}/list", json={"price": 1}, headers=headers).status_code == 403

    def test_auction_and_bid(self, client, nft, artist, fan, chain):
        _, artist_headers = artist
        _, headers = fan
        assert client.post(f"/api/nfts/{nft['id']}/bid", json={"bid_amount": 1}, headers=headers).status_code == 400

        client.post(f"/api/nfts/{nft['id']}/auction", json={"starting_price": 0.2, "duration": 3600},
                    headers=artist_headers)
        assert [n["id"] for n in client.get("/api/nfts/marketplace/auctions").json()["nfts"]] == [nft["id"]]
        assert client.get("/api/nfts/marketplace/listings").json()["nfts"] == []

        res = client.post(f"/api/nfts/{nft['id']}/bid", json={"bid_amount": 0.3}, headers=headers)
        assert res.json()["transaction_hash"] == "0xbid"
        assert db["nfttransaction"].find_one({"transaction_type": "bid"})["price"] == 0.3

    def test_cannot_buy_during_auction(self, client, nft, artist, fan, chain):
        _, artist_headers = artist
        _, headers = fan
        client.post(f"/api/nfts/{nft['id']}/auction", json={"starting_price": 1, "duration": 86400},
                    headers=artist_headers)
        res = client.post(f"/api/nfts/{nft['id']}/buy", headers=headers)
        assert res.status_code == 400
        assert res.json()["message"] == "NFT is in an active auction, place a bid instead"
        chain.buy_nft.assert_not_called()
        assert find_by_id("nft", nft["id"])["owner_id"] == nft["owner_id"]

    def test_user_nfts(self, client, nft, artist, fan):
        user, _ = artist
        _, headers = fan
        assert len(client.get(f"/api/nfts/user/{user['_id']}", headers=headers).json()["nfts"]) == 1


class TestModeration:
    def test_frozen_nft_cannot_trade(self, client, nft, admin, artist, fan, chain):
        _, admin_headers = admin
        _, artist_headers = artist
        _, headers = fan
        client.post(f"/api/nfts/{nft['id']}/list", json={"price": 0.5}, headers=artist_headers)

        res = client.post(f"/api/admin/nfts/{nft['id']}/freeze", json={"reason": "Stolen art"}, headers=admin_headers)
        assert res.json()["message"] == "NFT frozen successfully"
        assert res.json()["nft"]["is_listed"] is False
        assert client.get("/api/nfts/marketplace/listings").json()["nfts"] == []

        buy = client.post(f"/api/nfts/{nft['id']}/buy", headers=headers)
        assert buy.status_code == 403
        assert buy.json()["message"] == "NFT is frozen"
        assert client.post(f"/api/nfts/{nft['id']}/list", json={"price": 1}, headers=artist_headers).status_code == 403
        chain.buy_nft.assert_not_called()

        frozen = client.get("/api/admin/nfts", params={"status": "frozen"}, headers=admin_headers).json()
        assert frozen["total"] == 1
        assert frozen["nfts"][0]["frozen_reason"] == "Stolen art"

        client.post(f"/api/admin/nfts/{nft['id']}/freeze", json={"frozen": False}, headers=admin_headers)
        assert client.post(f"/api/nfts/{nft['id']}/list", json={"price": 1}, headers=artist_headers).status_code == 200

    def test_takedown(self, client, nft, admin, artist, chain):
        _, admin_headers = admin
        _, artist_headers = artist
        path = f"/api/admin/nfts/{nft['id']}/takedown"
        assert client.post(path, json={}, headers=admin_headers).json()["message"] == "NFT is not listed"

        client.post(f"/api/nfts/{nft['id']}/auction", json={"starting_price": 1, "duration": 3600},
                    headers=artist_headers)
        assert client.post(path, json={"reason": "Copyright"}, headers=admin_headers).status_code == 200
        stored = find_by_id("nft", nft["id"])
        assert stored["is_listed"] is False
        assert stored["auction_end_time"] is None
        assert db["adminlog"].find_one({"action": "takedown_listing"})["details"]["reason"] == "Copyright"

    def test_flag_transaction(self, client, nft, admin, artist, fan, chain):
        _, admin_headers = admin
        _, artist_headers = artist
        _, headers = fan
        client.post(f"/api/nfts/{nft['id']}/list", json={"price": 0.5}, headers=artist_headers)
        client.post(f"/api/nfts/{nft['id']}/buy", headers=headers)
        tx = client.get("/api/admin/nfts/transactions", headers=admin_headers).json()["transactions"][0]

        res = client.post(f"/api/admin/nfts/transactions/{tx['id']}/flag",
                          json={"reason": "Wash trading", "risk_level": "high"}, headers=admin_headers)
        assert res.json()["message"] == "Transaction flagged successfully"
        flagged = client.get("/api/admin/nfts/transactions", params={"flagged": True}, headers=admin_headers).json()
        assert flagged["total"] == 1
        assert flagged["transactions"][0]["risk_level"] == "high"

        bad = client.post(f"/api/admin/nfts/transactions/{tx['id']}/flag",
                          json={"reason": "x", "risk_level": "extreme"}, headers=admin_headers)
        assert bad.status_code == 400


class TestRoyalty:
    def test_set_splits(self, client, nft, artist, chain):
        _, headers = artist
        res = client.post(f"/api/royalty/splits/{nft['id']}", headers=headers,
                          json={"recipients": [WALLET], "percentages": [10]})
        assert res.json()["transaction_hash"] == "0xsplits"
        chain.set_royalty_splits.assert_called_once_with("7", [WALLET], [10.0])

    @pytest.mark.parametrize("body, message", [
        ({"recipients": [WALLET], "percentages": [10, 5]}, "Recipients and percentages must have the same length"),
        ({"recipients": [WALLET, WALLET], "percentages": [60, 50]}, "Royalty percentages cannot exceed 100"),
    ])
    def test_invalid_splits(self, client, nft, artist, chain, body, message):
        _, headers = artist
        res = client.post(f"/api/royalty/splits/{nft['id']}", headers=headers, json=body)
        assert res.status_code == 400
        assert res.json()["message"] == message

    def test_non_owner(self, client, nft, fan, chain):
        _, headers = fan
        res = client.post(f"/api/royalty/splits/{nft['id']}", headers=headers,
                          json={"recipients": [WALLET], "percentages": [10]})
        assert res.status_code == 403

    def test_reads_and_claims(self, client, nft, artist, chain):
        _, headers = artist
        assert client.get(f"/api/royalty/splits/{nft['id']}").json()["splits"][0]["percentage"] == 10.0
        calc = client.post("/api/royalty/calculate", json={"nft_id": nft["id"], "sale_price": 1}).json()
        assert calc["amounts"] == ["0.1"]
        assert client.post(f"/api/royalty/claim/{nft['id']}", headers=headers).json()["transaction_hash"] == "0xclaim"

    def test_streaming_royalties(self, client, nft, fan, artist, chain):
        fan_user, fan_headers = fan
        for streams, earnings in ((1000, 0.4), (200, 0.1)):
            res = client.post(f"/api/royalty/streaming/{nft['id']}", json={"streams": streams, "earnings": earnings},
                              headers=fan_headers)
            assert res.json() == {"message": "Streaming royalty recorded", "transaction_hash": "0xstream"}
        chain.record_streaming_royalty.assert_called_with(nft["token_id"], WALLET, 200, 0.1)
        assert db["streamingroyalty"].count_documents({"user_id": str(fan_user["_id"])}) == 2

        info = client.get(f"/api/royalty/streaming/{nft['id']}", headers=fan_headers).json()
        assert info["total_streams"] == 1200
        assert info["recorded_streams"] == 1200
        assert info["recorded_earnings"] == 0.5

        _, headers = artist
        res = client.post(f"/api/royalty/streaming/claim/{nft['id']}", headers=headers)
        assert res.json()["transaction_hash"] == "0xstreamclaim"

    def test_streaming_needs_streams(self, client, nft, fan, chain):
        _, headers = fan
        res = client.post(f"/api/royalty/streaming/{nft['id']}", json={"streams": 0, "earnings": 1}, headers=headers)
        assert res.status_code == 400
        chain.record_streaming_royalty.assert_not_called()


class TestFanClubs:
    def test_mint_and_upgrade(self, client, fan, chain):
        user, headers = fan
        res = client.post("/api/fanclubs/mint", json={"token_uri": "ipfs://QmClub"}, headers=headers).json()
        assert res["membership_id"] == "42"
        assert res["membership"]["tier"] == "BRONZE"
        chain.mint_membership.assert_called_once_with(WALLET, "ipfs://QmClub")

        res = client.post("/api/fanclubs/upgrade", headers=headers).json()
        assert res["tier"] == "SILVER"
        chain.upgrade_membership.assert_called_once_with("42")
        membership = client.get(f"/api/fanclubs/user/{user['_id']}", headers=headers).json()["membership"]
        assert membership["tier"] == "SILVER"

    def test_wallet_address_is_recipient(self, client, make_user, chain):
        wallet = "0x" + "cd" * 20
        _, headers = make_user(wallet_address=wallet)
        client.post("/api/fanclubs/mint", json={"token_uri": "u"}, headers=headers)
        assert chain.mint_membership.call_args.args[0] == wallet

    def test_duplicate_and_invalid_tier(self, client, fan, chain):
        _, headers = fan
        client.post("/api/fanclubs/mint", json={"token_uri": "u", "tier": "gold"}, headers=headers)
        res = client.post("/api/fanclubs/mint", json={"token_uri": "u", "tier": "GOLD"}, headers=headers)
        assert res.json()["message"] == "User already has GOLD fan club membership"
        assert client.post("/api/fanclubs/mint", json={"token_uri": "u", "tier": "DIAMOND"},
                           headers=headers).status_code == 400

    def test_upgrade_limits(self, client, fan, chain):
        _, headers = fan
        assert client.post("/api/fanclubs/upgrade", headers=headers).status_code == 404
        client.post("/api/fanclubs/mint", json={"token_uri": "u", "tier": "PLATINUM"}, headers=headers)
        assert client.post("/api/fanclubs/upgrade", headers=headers).status_code == 400

    def test_access_by_tier(self, client, fan, chain):
        _, headers = fan
        assert client.get("/api/fanclubs/access/c1", headers=headers).json()["has_access"] is False
        client.post("/api/fanclubs/mint", json={"token_uri": "u", "tier": "SILVER"}, headers=headers)
        path = "/api/fanclubs/access/c1"
        assert client.get(path, params={"required_tier": "BRONZE"}, headers=headers).json()["has_access"] is True
        assert client.get(path, params={"required_tier": "GOLD"}, headers=headers).json()["has_access"] is False

    def test_stats_and_tiers(self, client, fan, chain):
        _, headers = fan
        client.post("/api/fanclubs/mint", json={"token_uri": "u", "tier": "GOLD"}, headers=headers)
        stats = client.get("/api/fanclubs/stats").json()
        assert stats["active_members"] == 1
        assert stats["tier_distribution"] == {"BRONZE": 0, "SILVER": 0, "GOLD": 1, "PLATINUM": 0}
        assert client.get("/api/fanclubs/tiers").json()["tiers"]["GOLD"] == 500


class TestLoyalty:
    @pytest.fixture
    def badge(self):
        return create_document("achievement", {"name": "First Play", "points_reward": 150})

    def test_profile_created_on_first_access(self, client, fan):
        _, headers = fan
        profile = client.get("/api/loyalty/profile", headers=headers).json()
        assert profile["total_points"] == 0
        assert profile["level"] == 1

    def test_earn_and_upgrade(self, client, fan, badge):
        _, headers = fan
        earned = client.post("/api/loyalty/earn-achievement", json={"achievement_id": badge}, headers=headers).json()
        assert earned["token_id"].startswith("achievement_")
        again = client.post("/api/loyalty/earn-achievement", json={"achievement_id": badge}, headers=headers)
        assert again.json()["message"] == "Achievement already earned"

        profile = client.get("/api/loyalty/profile", headers=headers).json()
        assert profile["total_points"] == 150
        assert profile["achievements_earned"] == 1
        assert client.post("/api/loyalty/upgrade", headers=headers).json()["new_level"] == 2
        assert len(client.get("/api/loyalty/user-achievements", headers=headers).json()["achievements"]) == 1

    def test_unknown_achievement(self, client, fan):
        _, headers = fan
        res = client.post("/api/loyalty/earn-achievement", json={"achievement_id": "64b7f0000000000000000000"},
                          headers=headers)
        assert res.status_code == 404

    def test_stake_once(self, client, fan):
        _, headers = fan
        assert client.post("/api/loyalty/stake", json={"token_id": "t1"}, headers=headers).status_code == 200
        assert client.post("/api/loyalty/stake", json={"token_id": "t1"}, headers=headers).status_code == 400
        assert client.get("/api/loyalty/stats").json()["active_stakes"] == 1

    def test_achievements_listing(self, client, badge):
        create_document("achievement", {"name": "Superfan", "points_reward": 50})
        names = [a["name"] for a in client.get("/api/loyalty/achievements").json()["achievements"]]
        assert names == ["Superfan", "First Play"]
