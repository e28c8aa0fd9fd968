from handshakes import schema as handshakes_schema
import graphene
import graphql_jwt
import logging

logger = logging.getLogger(__name__)


class Query(handshakes_schema.Query, graphene.ObjectType):
	pass


class Mutation(handshakes_schema.Mutation, graphene.ObjectType):
	token_auth = graphql_jwt.ObtainJSONWebToken.Field()
	verify_token = graphql_jwt.Verify.Field()
	refresh_token = graphql_jwt.Refresh.Field()


# Register all types
types = [
	handshakes_schema.HandshakeType,
	handshakes_schema.HandshakeTxnType,
	handshakes_schema.PointsLedgerEntryType,
]

schema = graphene.Schema(
	query=Query,
	mutation=Mutation,
	types=types
)

__all__ = ['schema']
