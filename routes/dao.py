from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auth import get_user_from_token
from database import create_document, db, find_by_id, get_documents, serialize, update_by_id, utcnow
from routes.deps import get_or_404, require_artist
from schemas import DAOProposal, DAOVote, GovernanceToken

router = APIRouter(prefix="/api/dao", tags=["dao"])

VOTING_PERIOD = timedelta(days=7)
TALLIES = {"for": "for_votes", "against": "against_votes", "abstain": "abstain_votes"}


class ProposalBody(BaseModel):
    title: str
    description: str
    proposal_type: str = Field("general", pattern="^(general|funding|feature)$")
    value: float = Field(0, ge=0)


class VoteBody(BaseModel):
    support: str = Field(..., pattern="^(for|against|abstain)$")


def token_balance(user_id: str) -> dict:
    tokens = db["governancetoken"].find_one({"user_id": user_id})
    if tokens:
        return tokens
    return GovernanceToken(user_id=user_id).model_dump()


def award_governance_tokens(user_id: str, amount: int) -> None:
    """Credit ``amount`` tokens, creating the balance on first award."""
    if db["governancetoken"].find_one({"user_id": user_id}) is None:
        create_document("governancetoken", GovernanceToken(user_id=user_id))
    db["governancetoken"].update_one(
        {"user_id": user_id},
        {"$inc": {"balance": amount, "total_earned": amount}, "$set": {"updated_at": utcnow()}},
    )


@router.get("/proposals")
def list_proposals():
    return {"proposals": serialize(get_documents("daoproposal", sort=[("created_at", -1)]))}


@router.get("/proposals/{proposal_id}")
def get_proposal(proposal_id: str):
    proposal = get_or_404("daoproposal", proposal_id, "Proposal")
    votes = get_documents("daovote", {"proposal_id": proposal_id})
    return {**serialize(proposal), "votes": serialize(votes)}


@router.post("/proposals")
def create_proposal(body: ProposalBody, user=Depends(require_artist)):
    now = utcnow()
    proposal_id = create_document("daoproposal", DAOProposal(
        proposer_id=str(user["_id"]),
        start_time=now,
        end_time=now + VOTING_PERIOD,
        **body.model_dump(),
    ))
    return serialize(find_by_id("daoproposal", proposal_id))


@router.post("/proposals/{proposal_id}/vote")
def vote(proposal_id: str, body: VoteBody, user=Depends(get_user_from_token)):
    proposal = get_or_404("daoproposal", proposal_id, "Proposal")
    voter_id = str(user["_id"])
    if proposal.get("frozen"):
        raise HTTPException(status_code=403, detail="Proposal is frozen")
    if proposal.get("executed") or proposal.get("canceled") or utcnow() > proposal["end_time"]:
        raise HTTPException(status_code=400, detail="Voting period has ended")
    if db["daovote"].find_one({"proposal_id": proposal_id, "voter_id": voter_id}):
        raise HTTPException(status_code=400, detail="Already voted on this proposal")

    power = token_balance(voter_id).get("balance", 0)
    if power <= 0:
        raise HTTPException(status_code=400, detail="No governance tokens available for voting")

    vote_id = create_document("daovote", DAOVote(
        proposal_id=proposal_id, voter_id=voter_id, support=body.support, votes=power
    ))
    db["daoproposal"].update_one({"_id": proposal["_id"]}, {"$inc": {TALLIES[body.support]: power}})
    return serialize(find_by_id("daovote", vote_id))


@router.post("/proposals/{proposal_id}/execute")
def execute_proposal(proposal_id: str, user=Depends(get_user_from_token)):
    proposal = get_or_404("daoproposal", proposal_id, "Proposal")
    if proposal.get("frozen"):
        raise HTTPException(status_code=403, detail="Proposal is frozen")
    if proposal.get("executed"):
        raise HTTPException(status_code=400, detail="Proposal already executed")
    if utcnow() < proposal["end_time"]:
        raise HTTPException(status_code=400, detail="Voting period not ended")
    update_by_id("daoproposal", proposal_id, {"executed": True})
    return {"message": "Proposal executed successfully"}


@router.get("/proposals/{proposal_id}/votes")
def proposal_votes(proposal_id: str):
    votes = get_documents("daovote", {"proposal_id": proposal_id}, sort=[("created_at", -1)])
    return {"votes": serialize(votes)}


@router.get("/stats")
def dao_stats():
    now = utcnow()
    proposals = get_documents("daoproposal")
    executed = [p for p in proposals if p.get("executed")]
    return {
        "total_proposals": len(proposals),
        "active_proposals": sum(
            1 for p in proposals
            if not (p.get("executed") or p.get("canceled") or p.get("frozen")) and p["end_time"] > now
        ),
        "executed_proposals": len(executed),
        "total_votes": db["daovote"].count_documents({}),
        "treasury_balance": sum(p.get("value", 0) for p in executed if p.get("proposal_type") == "funding"),
        "total_allocations": sum(t.get("balance", 0) for t in db["governancetoken"].find()),
    }


@router.get("/user/tokens")
def my_tokens(user=Depends(get_user_from_token)):
    return serialize(token_balance(str(user["_id"])))
